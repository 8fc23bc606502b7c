"""File manifest served to remote installations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class FileEntry:
    hash: str  # lowercase hex SHA-256
    size: int
    owner_name: str
    required: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.hash,
            "size": self.size,
            "ownerName": self.owner_name,
            "required": self.required,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileEntry:
        return cls(
            hash=str(data.get("hash", "")),
            size=int(data.get("size", 0)),
            owner_name=data.get("ownerName") or data.get("modName", ""),
            required=bool(data.get("required", True)),
        )


@dataclass
class FileManifest:
    """Root-relative path → expected content, rebuilt from Live on every request."""

    generated_at: str = ""
    generation_time_ms: int = 0
    files: dict[str, FileEntry] = field(default_factory=dict)
    sync_exclusions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "generatedAt": self.generated_at,
            "generationTimeMs": self.generation_time_ms,
            "files": {path: entry.to_dict() for path, entry in self.files.items()},
            "syncExclusions": list(self.sync_exclusions),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileManifest:
        return cls(
            generated_at=data.get("generatedAt", ""),
            generation_time_ms=int(data.get("generationTimeMs", 0)),
            files={
                str(path): FileEntry.from_dict(entry)
                for path, entry in (data.get("files") or {}).items()
            },
            sync_exclusions=[str(p) for p in data.get("syncExclusions", [])],
        )
