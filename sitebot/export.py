from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .preview import ensure_document


@dataclass(slots=True)
class ExportArtifact:
    path: Path
    filename: str
    size_bytes: int
    generated_at: datetime


class SiteExporter:
    def __init__(self, exports_dir: Path) -> None:
        self.exports_dir = exports_dir

    def export(self, session_key: str, content: str) -> ExportArtifact:
        generated_at = datetime.now(timezone.utc)
        timestamp = generated_at.strftime("%Y%m%d_%H%M%S")
        filename = f"site_{session_key}_{timestamp}.html"
        export_path = self.exports_dir / filename

        document = ensure_document(content)
        self.exports_dir.mkdir(parents=True, exist_ok=True)
        with export_path.open("w", encoding="utf-8") as f:
            f.write(document)

        return ExportArtifact(
            path=export_path,
            filename=filename,
            size_bytes=len(document.encode("utf-8")),
            generated_at=generated_at,
        )

    @staticmethod
    def discard(artifact: ExportArtifact) -> None:
        artifact.path.unlink(missing_ok=True)
