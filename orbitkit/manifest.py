"""Database manifests describing a store's name, type and access controller."""

from __future__ import annotations

import posixpath
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import cbor2


@dataclass(frozen=True)
class Manifest:
    """A database manifest."""

    name: str
    type: str
    access_controller: str

    def to_cbor(self) -> bytes:
        """Encode the manifest as canonical CBOR."""
        return cbor2.dumps(
            {"name": self.name, "type": self.type, "access_controller": self.access_controller},
            canonical=True,
        )

    @classmethod
    def from_cbor(cls, data: bytes) -> Manifest:
        """Decode a manifest from CBOR bytes."""
        try:
            raw = cbor2.loads(data)
        except (ValueError, EOFError) as exc:
            raise ValueError("unable to decode manifest") from exc
        if not isinstance(raw, dict):
            raise ValueError("manifest is not a map")
        values = {}
        for key in ("name", "type", "access_controller"):
            value = raw.get(key, "")
            if not isinstance(value, str):
                raise ValueError(f"manifest field {key!r} is not a string")
            values[key] = value
        return cls(**values)


def create_db_manifest(
    writer: Callable[[bytes], Any],
    name: str,
    db_type: str,
    access_controller_address: str,
) -> Any:
    """Build a manifest, store its CBOR form with ``writer`` and return what the writer returns."""
    manifest = Manifest(
        name=name,
        type=db_type,
        access_controller=posixpath.normpath("/ipfs/" + access_controller_address),
    )
    try:
        return writer(manifest.to_cbor())
    except Exception as exc:
        raise RuntimeError("unable to write cbor data") from exc