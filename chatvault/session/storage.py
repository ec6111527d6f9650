"""Document persistence backends."""

import json
import os
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from chatvault.session.errors import MalformedDocumentError


class DocumentStorage(ABC):
    """
    Whole-document key/value persistence.

    Keys are relative, slash-separated names such as
    ``feat-1/sessions/chat_dev-feature-feat-1.json``. Implementations must be
    safe to call from worker threads.
    """

    @abstractmethod
    def read(self, key: str) -> dict[str, Any] | None:
        """Return the stored document, or None if absent.

        Raises:
            MalformedDocumentError: If the document exists but cannot be parsed.
        """
        pass

    @abstractmethod
    def write(self, key: str, data: dict[str, Any]) -> None:
        """Replace the document stored under ``key``."""
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the document stored under ``key``. Absent keys are ignored."""
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def list_keys(self, pattern: str) -> list[str]:
        """List stored keys matching a glob pattern."""
        pass


class JsonFileStorage(DocumentStorage):
    """
    Stores each document as a pretty-printed JSON file below ``root``.

    Writes go to a temporary sibling first and are moved into place with
    ``os.replace``, so a reader sees either the old or the new document.
    """

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        root = self.root.resolve()
        if root != path and root not in path.parents:
            raise ValueError(f"Storage key escapes root: {key}")
        return path

    def read(self, key: str) -> dict[str, Any] | None:
        path = self._path(key)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedDocumentError(key, str(e)) from e

        if not isinstance(data, dict):
            raise MalformedDocumentError(key, f"expected an object, got {type(data).__name__}")
        return data

    def write(self, key: str, data: dict[str, Any]) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)

        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp, path)
        finally:
            tmp.unlink(missing_ok=True)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def list_keys(self, pattern: str) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(
            p.relative_to(self.root).as_posix()
            for p in self.root.glob(pattern)
            if p.is_file()
        )
