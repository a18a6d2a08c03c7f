"""Multiplexes one sandboxed sub-document per session inside the panel.

Every surface gets an opaque handle when it is opened; the handle ->
session table is the only way inbound messages are attributed. Outbound
messages are routed the other way, by session id -> handle.

Sub-documents are built from memory: the HTML itself is delivered as a
``data:`` URI and references the shared bundle through ``data:`` URIs,
so nothing is loaded from disk or network by the nested document.

The bundle is fetched at most once at a time. Concurrent
``ensure_assets`` callers share one in-flight task; a failed fetch is
logged and the guard cleared so the next caller retries.
"""
from __future__ import annotations

import asyncio
import base64
import html
import json
import logging
import re
import secrets
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from agentdeck.adapters.assets import AssetBundle, AssetLoader
from agentdeck.adapters.event_bus import EventBus
from agentdeck.adapters.events import (
    MOUNT_SURFACE,
    THEME_CHANGED,
    UNMOUNT_SURFACE,
    SurfaceInbound,
    SurfacePost,
    dict_to_surface_message,
    with_prefix,
)
from agentdeck.engine.errors import AssetLoadError, UnknownSurfaceError

logger = logging.getLogger(__name__)

# async def handler(message: SurfaceInbound) -> None
InboundHandler = Callable[[SurfaceInbound], Awaitable[None]]

_CSS_VAR_NAME = re.compile(r"^--[A-Za-z0-9_-]+$")
_CSS_UNSAFE = re.compile(r"[<>{};]")

_CSP = (
    "default-src 'none'; "
    "script-src 'unsafe-inline' data:; "
    "style-src 'unsafe-inline' data:; "
    "img-src data:; "
    "font-src data:"
)

_BOOTSTRAP_TEMPLATE = """
(function () {
  var icons = %(icons)s;
  function activeIcon() {
    var theme = document.documentElement.getAttribute("data-theme");
    return theme === "light" ? icons.light : icons.dark;
  }
  function swap(root) {
    var nodes = root.querySelectorAll ? root.querySelectorAll("img[data-themed-icon]") : [];
    for (var i = 0; i < nodes.length; i++) {
      if (nodes[i].getAttribute("src") !== activeIcon()) {
        nodes[i].setAttribute("src", activeIcon());
      }
    }
  }
  new MutationObserver(function (mutations) {
    for (var i = 0; i < mutations.length; i++) {
      var added = mutations[i].addedNodes;
      for (var j = 0; j < added.length; j++) {
        if (added[j].nodeType !== 1) continue;
        if (added[j].matches && added[j].matches("img[data-themed-icon]")) {
          added[j].setAttribute("src", activeIcon());
        }
        swap(added[j]);
      }
      if (mutations[i].type === "attributes") swap(document);
    }
  }).observe(document.documentElement, {
    childList: true, subtree: true, attributes: true, attributeFilter: ["data-theme"]
  });
  window.addEventListener("message", function (event) {
    var msg = event.data || {};
    if (msg.type === "%(theme_changed)s") {
      var style = document.getElementById("host-theme");
      if (style) style.textContent = msg.css;
      document.documentElement.setAttribute("data-theme", msg.kind);
    }
  });
})();
"""


def theme_css(variables: Mapping[str, str]) -> str:
    """Serialize theme variables as one ``:root`` rule, dropping unsafe entries."""
    lines = []
    for name, value in sorted(variables.items()):
        if not _CSS_VAR_NAME.match(name) or _CSS_UNSAFE.search(str(value)):
            continue
        lines.append(f"  {name}: {value};")
    return ":root {\n" + "\n".join(lines) + "\n}"


class UIMultiplexer:
    """Owns the session -> surface mapping and the shared asset bundle."""

    def __init__(
        self,
        bus: EventBus,
        loader: AssetLoader | None = None,
        *,
        inbound_handler: InboundHandler | None = None,
    ) -> None:
        self._bus = bus
        self._loader = loader or AssetLoader()
        self._inbound_handler = inbound_handler
        self._handle_owner: dict[str, str] = {}
        self._session_handle: dict[str, str] = {}
        # sessions whose mount failed; re-opened on the next post
        self._unmounted: set[str] = set()
        self._bundle: AssetBundle | None = None
        self._loading: asyncio.Task | None = None
        self._theme_variables: dict[str, str] = {}
        self._theme_kind = "dark"

    def set_inbound_handler(self, handler: InboundHandler) -> None:
        self._inbound_handler = handler

    # ── Asset bundle ────────────────────────────────────────────

    @property
    def assets_loaded(self) -> bool:
        return self._bundle is not None

    async def ensure_assets(self) -> AssetBundle | None:
        if self._bundle is not None:
            return self._bundle
        task = self._loading
        if task is None:
            task = asyncio.ensure_future(self._loader.load_bundle())
            self._loading = task
        try:
            bundle = await asyncio.shield(task)
        except AssetLoadError as exc:
            logger.error("UI bundle fetch failed: %s", exc)
            if self._loading is task:
                self._loading = None
            return None
        except Exception:
            logger.exception("UI bundle fetch failed")
            if self._loading is task:
                self._loading = None
            return None
        self._bundle = bundle
        if self._loading is task:
            self._loading = None
        return bundle

    # ── Surfaces ────────────────────────────────────────────────

    def handle_for(self, session_id: str) -> str | None:
        return self._session_handle.get(session_id)

    def session_for_handle(self, handle: str) -> str:
        session_id = self._handle_owner.get(handle)
        if session_id is None:
            raise UnknownSurfaceError(handle)
        return session_id

    def open_session_ids(self) -> list[str]:
        return list(self._session_handle)

    async def open_surface(self, session_id: str) -> str | None:
        """Mount a sub-document for *session_id*, returning its handle."""
        existing = self._session_handle.get(session_id)
        if existing is not None:
            return existing
        handle = secrets.token_urlsafe(12)
        self._handle_owner[handle] = session_id
        self._session_handle[session_id] = handle

        bundle = await self.ensure_assets()
        if self._handle_owner.get(handle) != session_id:
            # closed while the bundle was loading
            return None
        if bundle is None:
            self._forget(handle)
            self._unmounted.add(session_id)
            return None
        self._unmounted.discard(session_id)

        document = self.build_document(bundle)
        encoded = base64.b64encode(document.encode("utf-8")).decode("ascii")
        await self._bus.emit(SurfacePost(
            handle=None,
            session_id=session_id,
            message={
                "type": MOUNT_SURFACE,
                "handle": handle,
                "sessionId": session_id,
                "src": f"data:text/html;base64,{encoded}",
                "sandbox": "allow-scripts",
            },
        ))
        logger.debug("Opened surface %s for session %s", handle, session_id)
        return handle

    async def close_surface(self, session_id: str) -> None:
        self._unmounted.discard(session_id)
        handle = self._session_handle.get(session_id)
        if handle is None:
            return
        self._forget(handle)
        await self._bus.emit(SurfacePost(
            handle=None,
            session_id=session_id,
            message={"type": UNMOUNT_SURFACE, "handle": handle, "sessionId": session_id},
        ))

    def _forget(self, handle: str) -> None:
        session_id = self._handle_owner.pop(handle, None)
        if session_id is not None and self._session_handle.get(session_id) == handle:
            del self._session_handle[session_id]

    def build_document(self, bundle: AssetBundle) -> str:
        """HTML for one sub-document: inline theme, icon bootstrap, bundle refs."""
        icons = json.dumps({"light": bundle.icon_light, "dark": bundle.icon_dark})
        bootstrap = _BOOTSTRAP_TEMPLATE % {
            "icons": icons,
            "theme_changed": THEME_CHANGED,
        }
        return (
            "<!DOCTYPE html>\n"
            f'<html lang="en" data-theme="{html.escape(self._theme_kind)}">\n'
            "<head>\n"
            '<meta charset="utf-8">\n'
            f'<meta http-equiv="Content-Security-Policy" content="{_CSP}">\n'
            f'<style id="host-theme">\n{theme_css(self._theme_variables)}\n</style>\n'
            f'<link rel="stylesheet" href="{bundle.style}">\n'
            f"<script>{bootstrap}</script>\n"
            "</head>\n"
            "<body>\n"
            '<div id="root"></div>\n'
            f'<script src="{bundle.script}"></script>\n'
            "</body>\n"
            "</html>\n"
        )

    # ── Routing ─────────────────────────────────────────────────

    async def post_to_session(self, session_id: str, message: dict[str, Any]) -> bool:
        """Send *message* to the session's sub-document. False if none is open.

        A session whose mount failed earlier gets one more open attempt.
        """
        handle = self._session_handle.get(session_id)
        if handle is None and session_id in self._unmounted:
            handle = await self.open_surface(session_id)
        if handle is None:
            return False
        payload = dict(message)
        payload["type"] = with_prefix(str(payload.get("type", "")))
        await self._bus.emit(SurfacePost(handle=handle, session_id=session_id, message=payload))
        return True

    async def post_to_panel(self, message: dict[str, Any]) -> None:
        payload = dict(message)
        payload["type"] = with_prefix(str(payload.get("type", "")))
        await self._bus.emit(SurfacePost(handle=None, message=payload))

    async def handle_inbound(self, handle: str, message: dict[str, Any]) -> SurfaceInbound | None:
        """Attribute a sub-document message by handle and forward it."""
        session_id = self._handle_owner.get(handle)
        if session_id is None:
            logger.warning("Dropping message from unknown surface %s", handle)
            return None
        wrapped = dict(message)
        wrapped["sessionId"] = session_id
        decoded = dict_to_surface_message(wrapped)
        if self._inbound_handler is not None:
            await self._inbound_handler(decoded)
        return decoded

    # ── Theme ───────────────────────────────────────────────────

    async def set_theme(self, variables: Mapping[str, str], kind: str = "dark") -> None:
        """Store the host theme for new surfaces and push it to open ones."""
        self._theme_variables = dict(variables)
        self._theme_kind = "light" if kind == "light" else "dark"
        css = theme_css(self._theme_variables)
        for session_id in list(self._session_handle):
            await self.post_to_session(
                session_id,
                {"type": THEME_CHANGED, "css": css, "kind": self._theme_kind},
            )
