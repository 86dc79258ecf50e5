#!/usr/bin/env python3
"""
Root Metadata Storage for mini-chroot.

Stores the declared attributes of a root as a JSON document:

    <root>/roots/<id>/.info.json      directory-backed roots
    <root>/roots/<id>.info.json       image-backed roots (beside the image)

Document fields:
- creationTime: UNIX timestamp
- startTime:    UNIX timestamp, present only while running
- type:         template name, clone:<source> or custom
- sizeBytes:    last computed on-disk usage
- comments:     [{"text": ..., "time": ...}], append-only

Runtime status (running, process count) is never stored here; it is
recomputed from the process and mount tables on every query.

Writes go to a temporary sibling file that is renamed into place, so a
concurrent reader sees either the old or the new document, never a partial
one.
"""

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from mini_chroot.images import find_image
from mini_chroot.utils import METADATA_FILE, Layout

log = logging.getLogger(__name__)

DEFAULT_TYPE = "custom"


@dataclass
class Comment:
    """A timestamped free-text note attached to a root."""

    text: str
    time: float = field(default_factory=time.time)


@dataclass
class RootInfo:
    """Declared attributes of a root."""

    creation_time: float = field(default_factory=time.time)
    start_time: Optional[float] = None
    type: str = DEFAULT_TYPE
    size_bytes: int = 0
    comments: List[Comment] = field(default_factory=list)

    def to_document(self) -> Dict[str, Any]:
        """Convert to the on-disk document."""
        doc: Dict[str, Any] = {
            "creationTime": self.creation_time,
            "type": self.type,
            "sizeBytes": self.size_bytes,
            "comments": [{"text": c.text, "time": c.time} for c in self.comments],
        }
        if self.start_time is not None:
            doc["startTime"] = self.start_time
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any], default_time: float = 0.0) -> "RootInfo":
        """
        Build from an on-disk document.

        Missing or mistyped fields fall back to defaults instead of failing.
        """
        info = cls(creation_time=_number(doc.get("creationTime"), default_time))

        start = doc.get("startTime")
        if isinstance(start, (int, float)) and not isinstance(start, bool):
            info.start_time = float(start)

        root_type = doc.get("type")
        if isinstance(root_type, str) and root_type:
            info.type = root_type

        info.size_bytes = int(_number(doc.get("sizeBytes"), 0))

        comments = doc.get("comments")
        if isinstance(comments, list):
            for item in comments:
                if isinstance(item, dict) and isinstance(item.get("text"), str):
                    info.comments.append(
                        Comment(item["text"], _number(item.get("time"), 0.0))
                    )
        return info


def _number(value: Any, default: float) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return default


class MetadataStore:
    """
    Metadata store for roots.

    Example:
        store = MetadataStore(layout)
        info = store.read("debian")
        store.append_comment("debian", "installed build deps")
    """

    def __init__(self, layout: Layout):
        self.layout = layout

    def path(self, root_id: str) -> str:
        """Get the metadata document path for a root."""
        if find_image(self.layout, root_id):
            return os.path.join(self.layout.roots_path, f"{root_id}.info.json")
        return os.path.join(self.layout.root_path(root_id), METADATA_FILE)

    def read(self, root_id: str) -> Optional[RootInfo]:
        """
        Read a root's metadata.

        Returns:
            RootInfo instance, or None if the document is missing or corrupt
        """
        path = self.path(root_id)
        try:
            with open(path, "r") as f:
                doc = json.load(f)
        except FileNotFoundError:
            return None
        except (IOError, OSError, json.JSONDecodeError) as e:
            log.warning("Unreadable metadata for %s: %s", root_id, e)
            return None

        if not isinstance(doc, dict):
            log.warning("Malformed metadata for %s", root_id)
            return None

        return RootInfo.from_document(doc, default_time=self._tree_mtime(root_id))

    def load(self, root_id: str) -> RootInfo:
        """Read a root's metadata, falling back to defaults."""
        info = self.read(root_id)
        if info is None:
            info = RootInfo(creation_time=self._tree_mtime(root_id))
        return info

    def write(self, root_id: str, info: RootInfo) -> str:
        """
        Atomically write a root's metadata.

        Returns:
            Path to the document

        Raises:
            OSError: If the document cannot be written
        """
        path = self.path(root_id)
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(
            dir=directory, prefix=f".{root_id}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(info.to_document(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

        return path

    def append_comment(self, root_id: str, text: str) -> RootInfo:
        """Append a timestamped comment and persist it."""
        info = self.load(root_id)
        info.comments.append(Comment(text))
        self.write(root_id, info)
        return info

    def remove(self, root_id: str) -> None:
        """Remove the sibling document of an image-backed root, if any."""
        sibling = os.path.join(self.layout.roots_path, f"{root_id}.info.json")
        try:
            os.unlink(sibling)
        except FileNotFoundError:
            pass

    def _tree_mtime(self, root_id: str) -> float:
        try:
            return os.stat(self.layout.root_path(root_id)).st_mtime
        except OSError:
            return 0.0
