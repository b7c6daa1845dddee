from __future__ import annotations

import html
import re
from dataclasses import dataclass

from .constants import VIEWPORTS

# Scripts may run inside the frame, but without allow-same-origin the frame
# gets an opaque origin and cannot reach host storage, cookies or DOM, and
# without allow-top-navigation it cannot navigate the host page.
SANDBOX_FLAGS = "allow-scripts allow-modals allow-forms allow-popups"

_DOCUMENT_RE = re.compile(r"^\s*(<!doctype\s+html|<html[\s>])", re.IGNORECASE)

DOCUMENT_SHELL = """<!DOCTYPE html>
<html>
<head>
<meta charset="UTF-8" />
<meta name="viewport" content="width=device-width, initial-scale=1.0" />
<script src="https://cdn.tailwindcss.com"></script>
<style>body {{ -webkit-font-smoothing: antialiased; }}</style>
</head>
<body>
{body}
</body>
</html>"""

HOST_PAGE = """<!DOCTYPE html>
<html>
<head>
<meta charset="UTF-8" />
<meta name="viewport" content="width=device-width, initial-scale=1.0" />
<title>Preview ({viewport}, {width}x{height})</title>
<style>
html, body {{ margin: 0; padding: 0; background: #0a0a0a; }}
.stage {{ display: flex; justify-content: center; padding: 24px 0; }}
.device {{ width: {width}px; height: {height}px; border: 8px solid #1f1f1f; border-radius: {radius}px; overflow: hidden; background: #fff; }}
iframe {{ width: 100%; height: 100%; border: 0; display: block; }}
</style>
</head>
<body>
<div class="stage">
<div class="device" data-viewport="{viewport}">
<iframe title="Preview" sandbox="{sandbox}" referrerpolicy="no-referrer" srcdoc="{srcdoc}"></iframe>
</div>
</div>
</body>
</html>
"""

_DEVICE_RADIUS = {
    "compact": 40,
    "medium": 24,
    "full": 12,
}


@dataclass(frozen=True, slots=True)
class RenderedPreview:
    viewport: str
    width: int
    height: int
    html: str

    def as_bytes(self) -> bytes:
        return self.html.encode("utf-8")


def ensure_document(content: str) -> str:
    """Wrap a bare body fragment into a standalone document."""
    if _DOCUMENT_RE.match(content):
        return content
    return DOCUMENT_SHELL.format(body=content)


class PreviewRenderer:
    def render(self, content: str, viewport: str) -> RenderedPreview:
        if viewport not in VIEWPORTS:
            raise ValueError(f"Unknown viewport '{viewport}', expected one of: {', '.join(VIEWPORTS)}")

        width, height = VIEWPORTS[viewport]
        document = ensure_document(content)
        page = HOST_PAGE.format(
            viewport=viewport,
            width=width,
            height=height,
            radius=_DEVICE_RADIUS[viewport],
            sandbox=SANDBOX_FLAGS,
            srcdoc=html.escape(document, quote=True),
        )
        return RenderedPreview(viewport=viewport, width=width, height=height, html=page)
