# src/llmgate/backup/s3_backup.py
"""
Encrypted blob backup to S3: AES-256-GCM locally, SigV4-signed PUT/GET remotely.
What goes in the blob is the caller's business.
"""
from __future__ import annotations
import base64
import binascii
import datetime as dt
import logging
import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import quote, urlencode

import httpx
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from llmgate.core.errors import MissingCredential
from llmgate.core.ports import SecretStore
from llmgate.providers.http import HTTPBackend, network_failure, raise_for_status
from llmgate.secrets import keys
from llmgate.signing.sigv4 import SigV4Signer

log = logging.getLogger(__name__)

DEFAULT_BUCKET = "llmgate-backups"
DEFAULT_REGION = "us-east-1"
DEFAULT_PREFIX = "llmgate-backups/"
NONCE_SIZE = 12
KEY_SIZE = 32
PROVIDER = "s3"


class BackupError(Exception):
    pass


@dataclass(frozen=True)
class S3Config:
    access_key: str
    secret_key: str
    bucket: str
    region: str


def encrypt(data: bytes, key: bytes) -> bytes:
    """nonce || ciphertext || tag"""
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, data, None)


def decrypt(blob: bytes, key: bytes) -> bytes:
    if len(blob) < NONCE_SIZE + 16:
        raise BackupError("Backup is too short to be valid.")
    try:
        return AESGCM(key).decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], None)
    except InvalidTag as e:
        raise BackupError("Backup could not be decrypted (wrong key or corrupted data).") from e


def latest_key_from_listing(xml_text: str) -> Optional[str]:
    """Newest object in a ListObjectsV2 response, by LastModified then key."""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise BackupError(f"Unreadable bucket listing: {e}") from e
    entries: List[Tuple[str, str]] = []
    for contents in root.iter():
        if not contents.tag.endswith("Contents"):
            continue
        key = modified = None
        for child in contents:
            if child.tag.endswith("Key"):
                key = child.text
            elif child.tag.endswith("LastModified"):
                modified = child.text
        if key:
            entries.append((modified or "", key))
    if not entries:
        return None
    return max(entries)[1]


class S3BackupClient(HTTPBackend):
    def __init__(
        self,
        secrets: SecretStore,
        *,
        prefix: str = DEFAULT_PREFIX,
        endpoint: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(client=client, timeout=timeout)
        self.secrets = secrets
        self.prefix = prefix
        self._endpoint = endpoint

    def is_configured(self) -> bool:
        return bool(self.secrets.load(keys.S3_ACCESS_KEY) and self.secrets.load(keys.S3_SECRET_KEY))

    def config(self) -> S3Config:
        access_key = self.secrets.load(keys.S3_ACCESS_KEY)
        secret_key = self.secrets.load(keys.S3_SECRET_KEY)
        if not access_key or not secret_key:
            raise MissingCredential(PROVIDER)
        return S3Config(
            access_key=access_key,
            secret_key=secret_key,
            bucket=self.secrets.load(keys.S3_BUCKET_NAME) or DEFAULT_BUCKET,
            region=self.secrets.load(keys.S3_REGION) or DEFAULT_REGION,
        )

    def encryption_key(self, *, create: bool = True) -> bytes:
        """The stored 256-bit key, created and saved on first use."""
        stored = self.secrets.load(keys.BACKUP_ENCRYPTION_KEY)
        if not stored and not create:
            raise BackupError("No backup encryption key is stored; nothing can be decrypted.")
        if stored:
            try:
                key = base64.b64decode(stored, validate=True)
            except binascii.Error:
                key = b""
            if len(key) == KEY_SIZE:
                return key
            if not create:
                raise BackupError("The stored backup encryption key is malformed; nothing can be decrypted.")
            log.warning("stored backup key is malformed; generating a new one")
        key = AESGCM.generate_key(bit_length=256)
        if not self.secrets.save(keys.BACKUP_ENCRYPTION_KEY, base64.b64encode(key).decode("ascii")):
            raise BackupError("Could not store the backup encryption key.")
        return key

    def _base_url(self, cfg: S3Config) -> str:
        if self._endpoint:
            return self._endpoint.rstrip("/")
        return f"https://{cfg.bucket}.s3.{cfg.region}.amazonaws.com"

    async def _send(self, method: str, url: str, cfg: S3Config, body: bytes = b"", **extra_headers: str) -> httpx.Response:
        signer = SigV4Signer(cfg.access_key, cfg.secret_key, cfg.region, "s3")
        headers = signer.sign(method, url, body)
        headers.update(extra_headers)
        try:
            async with self._session() as client:
                resp = await client.request(method, url, headers=headers, content=body or None)
        except httpx.TransportError as e:
            raise network_failure(PROVIDER, e) from e
        await raise_for_status(PROVIDER, resp)
        return resp

    async def backup(self, data: bytes, *, now: Optional[dt.datetime] = None) -> str:
        """Encrypt and upload; returns the object key."""
        cfg = self.config()
        blob = encrypt(data, self.encryption_key())
        stamp = (now or dt.datetime.now(dt.timezone.utc)).strftime("%Y%m%dT%H%M%SZ")
        key = f"{self.prefix}backup-{stamp}.enc"
        url = f"{self._base_url(cfg)}/{quote(key, safe='/-_.~')}"
        await self._send("PUT", url, cfg, blob, **{"content-type": "application/octet-stream"})
        log.info("backup uploaded to s3://%s/%s (%d bytes)", cfg.bucket, key, len(blob))
        return key

    async def latest_key(self) -> Optional[str]:
        cfg = self.config()
        query = urlencode({"list-type": "2", "prefix": self.prefix})
        resp = await self._send("GET", f"{self._base_url(cfg)}/?{query}", cfg)
        return latest_key_from_listing(resp.text)

    async def restore_latest(self) -> bytes:
        cfg = self.config()
        key = await self.latest_key()
        if key is None:
            raise BackupError("No backups found in S3.")
        resp = await self._send("GET", f"{self._base_url(cfg)}/{quote(key, safe='/-_.~')}", cfg)
        log.info("restoring s3://%s/%s", cfg.bucket, key)
        return decrypt(resp.content, self.encryption_key(create=False))
