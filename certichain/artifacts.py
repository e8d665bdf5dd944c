"""Off-ledger artifact storage.

Lot documents (certificates, lab reports, photos) live outside the ledger.
The envelope only records their content identifier in
``linked_artifact_hash``. Any store that returns stable identifiers works;
``LocalArtifactStore`` is a content-addressed directory layout:

  ``<root>/<type>/<digest>``

Where:
- ``<type>`` is a short lowercase artifact category (``certificate``, ``lab-report``)
- ``<digest>`` is the lowercase sha256 hex digest of the stored bytes

Identifiers have the form ``sha256:<digest>``.
"""

from __future__ import annotations

import hashlib
import os
import pathlib
import re
import tempfile
from typing import Any, List, Optional, Protocol, Union

from certichain.envelope import canonical_json
from certichain.errors import ArtifactError, ValidationError
from certichain.observability import CertichainLayer, get_logger

logger = get_logger("store", CertichainLayer.ARTIFACTS)

SHA256_HEX_RE = re.compile(r"^[a-f0-9]{64}$")
ARTIFACT_TYPE_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,63}$")
CID_PREFIX = "sha256:"


class ArtifactStore(Protocol):
    def put_bytes(self, data: bytes, artifact_type: str) -> str:
        ...

    def put_json(self, obj: Any, artifact_type: str) -> str:
        ...

    def get(self, cid: str) -> bytes:
        ...


def normalize_artifact_type(t: str) -> str:
    """Normalize and validate an artifact type string."""
    tt = str(t or "").strip().lower()
    if not tt:
        raise ValidationError("artifact_type", "required", t)
    if not ARTIFACT_TYPE_RE.match(tt):
        raise ValidationError("artifact_type", "must match ^[a-z0-9][a-z0-9-]{0,63}$ (lowercase, no slashes)", t)
    return tt


def normalize_digest(cid_or_digest: str) -> str:
    dd = str(cid_or_digest or "").strip().lower()
    if dd.startswith(CID_PREFIX):
        dd = dd[len(CID_PREFIX):]
    if not SHA256_HEX_RE.match(dd):
        raise ValidationError("cid", "digest must be 64 lowercase hex chars", cid_or_digest)
    return dd


def content_id(data: bytes) -> str:
    return CID_PREFIX + hashlib.sha256(data).hexdigest()


class LocalArtifactStore:
    """Content-addressed store on the local filesystem."""

    def __init__(self, root: Union[str, pathlib.Path]):
        self.root = pathlib.Path(root)

    def _candidates(self, digest: str) -> List[pathlib.Path]:
        if not self.root.exists():
            return []
        return sorted(p for p in self.root.glob(f"*/{digest}") if p.is_file())

    def put_bytes(self, data: bytes, artifact_type: str) -> str:
        if not isinstance(data, (bytes, bytearray)):
            raise ValidationError("data", "must be bytes", type(data).__name__)
        tt = normalize_artifact_type(artifact_type)
        data = bytes(data)
        digest = hashlib.sha256(data).hexdigest()

        dest = self.root / tt / digest
        if dest.exists():
            # Same digest must mean same bytes.
            if dest.read_bytes() != data:
                raise ArtifactError(f"CAS collision: existing {dest} differs from new content")
            return CID_PREFIX + digest

        dest.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(dest.parent), prefix=f".{digest}.")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, dest)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

        logger.info("Stored artifact", operation="put", artifact_type=tt, digest=digest, size=len(data))
        return CID_PREFIX + digest

    def put_json(self, obj: Any, artifact_type: str) -> str:
        return self.put_bytes(canonical_json(obj), artifact_type)

    def path_for(self, cid: str) -> Optional[pathlib.Path]:
        candidates = self._candidates(normalize_digest(cid))
        return candidates[0] if candidates else None

    def get(self, cid: str) -> bytes:
        digest = normalize_digest(cid)
        candidates = self._candidates(digest)
        if not candidates:
            raise FileNotFoundError(f"artifact not found in CAS: {CID_PREFIX}{digest}")

        data = candidates[0].read_bytes()
        actual = hashlib.sha256(data).hexdigest()
        if actual != digest:
            raise ArtifactError(
                f"CAS integrity failure: content hash {actual} does not match "
                f"expected digest {digest} for artifact {candidates[0]}"
            )
        return data
