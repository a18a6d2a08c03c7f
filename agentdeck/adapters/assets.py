"""Loads the shared UI bundle for session sub-documents.

The bundle is one script, one stylesheet and two theme-variant icons.
Each file is turned into a ``data:`` URI so sub-documents can be built
entirely from memory; the panel's content policy only admits inline
and ``data:`` sources.
"""
from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from pathlib import Path

from aiohttp import ClientError, ClientSession, ClientTimeout

from agentdeck.engine.errors import AssetLoadError

logger = logging.getLogger(__name__)

DEFAULT_ASSET_DIR = Path(__file__).resolve().parent.parent / "host" / "static"

BUNDLE_FILES: dict[str, tuple[str, str]] = {
    "script": ("agent-manager.js", "text/javascript"),
    "style": ("agent-manager.css", "text/css"),
    "icon_light": ("icon-light.svg", "image/svg+xml"),
    "icon_dark": ("icon-dark.svg", "image/svg+xml"),
}


def to_data_uri(content: bytes, mime_type: str) -> str:
    encoded = base64.b64encode(content).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


@dataclass(frozen=True)
class AssetBundle:
    """In-memory references to the fetched bundle."""
    script: str
    style: str
    icon_light: str
    icon_dark: str


class AssetLoader:
    """Fetches bundle files from a directory or a base URL."""

    def __init__(
        self,
        asset_dir: str | Path | None = None,
        base_url: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/") + "/" if base_url else None
        if asset_dir is not None:
            self._asset_dir: Path | None = Path(asset_dir)
        elif self._base_url is None:
            self._asset_dir = DEFAULT_ASSET_DIR
        else:
            self._asset_dir = None
        self._timeout = timeout

    @property
    def source(self) -> str:
        return str(self._asset_dir) if self._asset_dir is not None else str(self._base_url)

    async def _read_file(self, filename: str) -> bytes:
        assert self._asset_dir is not None
        path = self._asset_dir / filename
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise AssetLoadError(filename, str(exc)) from exc

    async def _fetch_url(self, session: ClientSession, filename: str) -> bytes:
        url = f"{self._base_url}{filename}"
        try:
            async with session.get(url) as resp:
                if resp.status != 200:
                    raise AssetLoadError(filename, f"HTTP {resp.status} from {url}")
                return await resp.read()
        except ClientError as exc:
            raise AssetLoadError(filename, str(exc)) from exc

    async def load_bundle(self) -> AssetBundle:
        """Fetch all four files. Raises AssetLoadError on the first failure."""
        names = list(BUNDLE_FILES)
        filenames = [BUNDLE_FILES[name][0] for name in names]
        if self._asset_dir is not None:
            contents = await asyncio.gather(*(self._read_file(f) for f in filenames))
        else:
            async with ClientSession(timeout=ClientTimeout(total=self._timeout)) as session:
                contents = await asyncio.gather(
                    *(self._fetch_url(session, f) for f in filenames)
                )
        uris = {
            name: to_data_uri(content, BUNDLE_FILES[name][1])
            for name, content in zip(names, contents)
        }
        logger.info("Loaded UI bundle from %s", self.source)
        return AssetBundle(**uris)
