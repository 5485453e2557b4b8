"""Remote object store key layout and the in-memory backend.

Key layout (slash-delimited, case-sensitive)::

    sync-manifest.json
    templates/<name>.json
    templates/assets/<name>/<assetFile>
    events/<name>.json
    settings/<key>.json

Names are percent-encoded so a ``/`` in an entity name cannot escape its
directory; everything else readable stays as is.
"""

import logging
import threading
from typing import Dict, List
from urllib.parse import quote, unquote

from boothsync.types import EntityKind, ObjectNotFoundError

logger = logging.getLogger(__name__)

MANIFEST_KEY = "sync-manifest.json"

KIND_PREFIXES = {
    EntityKind.TEMPLATE: "templates/",
    EntityKind.EVENT: "events/",
    EntityKind.SETTING: "settings/",
}

_SAFE_NAME_CHARS = " -_.(),'&+@!"


def encode_name(name: str) -> str:
    return quote(name, safe=_SAFE_NAME_CHARS)


def decode_name(segment: str) -> str:
    return unquote(segment)


def entity_key(kind: EntityKind, name: str) -> str:
    return f"{KIND_PREFIXES[EntityKind(kind)]}{encode_name(name)}.json"


def asset_prefix(template_name: str) -> str:
    return f"templates/assets/{encode_name(template_name)}/"


def asset_key(template_name: str, file_name: str) -> str:
    return f"{asset_prefix(template_name)}{encode_name(file_name)}"


def asset_file_name(key: str) -> str:
    return decode_name(key.rsplit("/", 1)[-1])


class InMemoryObjectStore:
    """Dict-backed RemoteObjectStore.

    Several SyncService instances can share one of these to behave like
    devices sharing a bucket.
    """

    def __init__(self):
        self._objects: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes) -> None:
        with self._lock:
            self._objects[key] = bytes(data)

    def get(self, key: str) -> bytes:
        with self._lock:
            try:
                return self._objects[key]
            except KeyError:
                raise ObjectNotFoundError(key) from None

    def list(self, prefix: str) -> List[str]:
        with self._lock:
            return sorted(key for key in self._objects if key.startswith(prefix))

    def delete(self, key: str) -> None:
        with self._lock:
            self._objects.pop(key, None)

    def probe(self) -> None:
        return None

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._objects

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)
