#!/usr/bin/env python3
"""
cryptbatch_store - JSON file persistence for keys and encrypted notes

Keys live in ``<key_store_path>/<fingerprint>.json`` and notes in
``<vault_path>/<id>.json``, one pretty-printed JSON document per entry.
"""

import json
import logging
import os
import re
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from cryptbatch import CryptBatchError, resolve_path

logger = logging.getLogger("cryptbatch.store")

CONFIG_DIR = Path(".config") / "cryptbatch"
_FINGERPRINT_RE = re.compile(r"^[0-9A-Fa-f]{8,64}$")
_NOTE_ID_RE = re.compile(r"^[0-9A-Za-z-]{1,64}$")


class KeyStoreError(CryptBatchError):
    """Base exception for key and note store errors"""

    pass


class AmbiguousKeyError(KeyStoreError):
    pass


def default_config_dir() -> Path:
    return Path.home() / CONFIG_DIR


def get_paths(config: Optional[Dict] = None) -> Dict[str, Path]:
    """Key store and vault directories, honoring config overrides"""
    config = config or {}
    base = default_config_dir()
    key_store = config.get("key_store_path")
    vault = config.get("vault_path")
    return {
        "key_store_path": resolve_path(key_store) if key_store else base / "keys",
        "vault_path": resolve_path(vault) if vault else base / "vault",
    }


def ensure_config_dirs(config: Optional[Dict] = None) -> Dict[str, Path]:
    paths = get_paths(config)
    for path in paths.values():
        path.mkdir(parents=True, exist_ok=True)
    return paths


def _write_private_json(path: Path, data: Dict):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    try:
        os.chmod(path, 0o600)
    except OSError as e:
        logger.debug(f"Cannot restrict permissions on {path}: {e}")


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class StoredKey:
    """A key as kept in the key store"""

    name: str
    email: str
    fingerprint: str
    key_id: str
    public_key: str
    created: datetime
    algorithm: str
    private_key: Optional[str] = None

    @property
    def has_private_key(self) -> bool:
        return bool(self.private_key)

    @property
    def label(self) -> str:
        return f"{self.name} <{self.email}>" if self.email else self.name

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["created"] = self.created.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "StoredKey":
        return cls(
            name=data["name"],
            email=data.get("email", ""),
            fingerprint=data["fingerprint"],
            key_id=data.get("key_id") or data["fingerprint"][-16:],
            public_key=data["public_key"],
            created=_parse_timestamp(data["created"]),
            algorithm=data.get("algorithm", "unknown"),
            private_key=data.get("private_key"),
        )


@dataclass
class NoteRecord:
    """An encrypted note; ``encrypted`` is an armored message"""

    id: str
    created: datetime
    updated: datetime
    encrypted: str

    @classmethod
    def new(cls, encrypted: str) -> "NoteRecord":
        now = datetime.now(timezone.utc)
        return cls(id=str(uuid.uuid4()), created=now, updated=now, encrypted=encrypted)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "created": self.created.isoformat(),
            "updated": self.updated.isoformat(),
            "encrypted": self.encrypted,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "NoteRecord":
        return cls(
            id=data["id"],
            created=_parse_timestamp(data["created"]),
            updated=_parse_timestamp(data["updated"]),
            encrypted=data["encrypted"],
        )


class KeyStore:
    """Directory of ``<fingerprint>.json`` key files"""

    def __init__(self, key_store_path: Union[str, Path]):
        self.key_store_path = Path(key_store_path)

    def _key_path(self, fingerprint: str) -> Path:
        if not _FINGERPRINT_RE.match(fingerprint or ""):
            raise KeyStoreError(f"Invalid fingerprint: {fingerprint!r}")
        return self.key_store_path / f"{fingerprint.upper()}.json"

    def save_key(self, key: StoredKey) -> Path:
        path = self._key_path(key.fingerprint)
        _write_private_json(path, key.to_dict())
        logger.debug(f"Saved key {key.fingerprint} to {path}")
        return path

    def get_key(self, fingerprint: str) -> Optional[StoredKey]:
        """Load a key, or None when it is missing or unreadable"""
        try:
            path = self._key_path(fingerprint)
            return StoredKey.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (KeyStoreError, OSError, ValueError, KeyError, TypeError):
            return None

    def list_keys(self) -> List[StoredKey]:
        """All readable keys, newest first"""
        if not self.key_store_path.is_dir():
            return []

        keys = []
        for path in sorted(self.key_store_path.glob("*.json")):
            try:
                keys.append(StoredKey.from_dict(json.loads(path.read_text(encoding="utf-8"))))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.debug(f"Skipping unreadable key file {path}: {e}")
        keys.sort(key=lambda k: k.created, reverse=True)
        return keys

    def delete_key(self, fingerprint: str) -> bool:
        try:
            self._key_path(fingerprint).unlink()
        except (KeyStoreError, OSError):
            return False
        logger.debug(f"Deleted key {fingerprint}")
        return True

    def key_exists(self, fingerprint: str) -> bool:
        try:
            return self._key_path(fingerprint).exists()
        except KeyStoreError:
            return False

    def find_key(self, query: str) -> Optional[StoredKey]:
        """Look a key up by fingerprint or key-id prefix, or by exact email.

        Raises ``AmbiguousKeyError`` when more than one key matches.
        """
        query = (query or "").strip()
        if not query:
            return None
        compact = query.replace(" ", "").upper()

        matches = []
        for key in self.list_keys():
            if key.email and key.email.lower() == query.lower():
                matches.append(key)
            elif _FINGERPRINT_RE.match(compact) and (
                key.fingerprint.startswith(compact) or key.key_id.startswith(compact)
            ):
                matches.append(key)

        if len(matches) > 1:
            listed = ", ".join(k.fingerprint for k in matches)
            raise AmbiguousKeyError(f"'{query}' matches several keys: {listed}")
        return matches[0] if matches else None


class NoteStore:
    """Directory of ``<id>.json`` encrypted notes"""

    def __init__(self, vault_path: Union[str, Path]):
        self.vault_path = Path(vault_path)

    def _note_path(self, note_id: str) -> Path:
        if not _NOTE_ID_RE.match(note_id or ""):
            raise KeyStoreError(f"Invalid note id: {note_id!r}")
        return self.vault_path / f"{note_id}.json"

    def save_note(self, note: NoteRecord) -> Path:
        path = self._note_path(note.id)
        _write_private_json(path, note.to_dict())
        return path

    def get_note(self, note_id: str) -> Optional[NoteRecord]:
        try:
            path = self._note_path(note_id)
            return NoteRecord.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (KeyStoreError, OSError, ValueError, KeyError, TypeError):
            return None

    def list_notes(self) -> List[NoteRecord]:
        """All readable notes, most recently updated first"""
        if not self.vault_path.is_dir():
            return []

        notes = []
        for path in sorted(self.vault_path.glob("*.json")):
            try:
                notes.append(NoteRecord.from_dict(json.loads(path.read_text(encoding="utf-8"))))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.debug(f"Skipping unreadable note {path}: {e}")
        notes.sort(key=lambda n: n.updated, reverse=True)
        return notes

    def delete_note(self, note_id: str) -> bool:
        try:
            self._note_path(note_id).unlink()
        except (KeyStoreError, OSError):
            return False
        return True
