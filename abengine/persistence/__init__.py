"""ABEngine Persistence Subsystem."""

from .store import FileStore, InMemoryStore, Store
from .snapshot import SCHEMA_VERSION, RegistryState, decode_snapshot, encode_snapshot, migrate
from .writer import SnapshotWriter

__all__ = [
    "Store",
    "InMemoryStore",
    "FileStore",
    "SCHEMA_VERSION",
    "RegistryState",
    "decode_snapshot",
    "encode_snapshot",
    "migrate",
    "SnapshotWriter",
]
