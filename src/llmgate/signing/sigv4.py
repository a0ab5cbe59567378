"""
SigV4 request signing without an SDK.

Shared by the Bedrock adapter and the S3 backup client. Only the SHA-256 of
the body is ever used.
"""
from __future__ import annotations
import datetime as dt
import hashlib
import hmac
from typing import Dict, Optional
from urllib.parse import parse_qsl, quote, unquote, urlsplit

ALGORITHM = "AWS4-HMAC-SHA256"
SIGNED_HEADERS = ("host", "x-amz-content-sha256", "x-amz-date")
_UNRESERVED = "-_.~"


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def amz_timestamp(when: Optional[dt.datetime] = None) -> str:
    when = when or dt.datetime.now(dt.timezone.utc)
    if when.tzinfo is not None:
        when = when.astimezone(dt.timezone.utc)
    return when.strftime("%Y%m%dT%H%M%SZ")


def canonical_uri(path: str) -> str:
    if not path:
        return "/"
    return "/".join(quote(unquote(segment), safe=_UNRESERVED) for segment in path.split("/"))


def canonical_query(query: str) -> str:
    pairs = parse_qsl(query, keep_blank_values=True)
    encoded = sorted((quote(k, safe=_UNRESERVED), quote(v, safe=_UNRESERVED)) for k, v in pairs)
    return "&".join(f"{k}={v}" for k, v in encoded)


def canonical_request(method: str, path: str, query: str, headers: Dict[str, str], payload_hash: str) -> str:
    header_block = "".join(f"{name}:{headers[name].strip()}\n" for name in SIGNED_HEADERS)
    return "\n".join([
        method.upper(),
        canonical_uri(path),
        canonical_query(query),
        header_block,
        ";".join(SIGNED_HEADERS),
        payload_hash,
    ])


def credential_scope(date: str, region: str, service: str) -> str:
    return f"{date}/{region}/{service}/aws4_request"


def string_to_sign(timestamp: str, scope: str, canonical: str) -> str:
    return "\n".join([ALGORITHM, timestamp, scope, sha256_hex(canonical.encode("utf-8"))])


def derive_signing_key(secret_key: str, date: str, region: str, service: str) -> bytes:
    k_date = _hmac(("AWS4" + secret_key).encode("utf-8"), date)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, "aws4_request")


class SigV4Signer:
    def __init__(self, access_key: str, secret_key: str, region: str, service: str):
        self.access_key = access_key
        self.secret_key = secret_key
        self.region = region
        self.service = service

    def sign(
        self,
        method: str,
        url: str,
        body: bytes = b"",
        *,
        timestamp: Optional[dt.datetime] = None,
    ) -> Dict[str, str]:
        """
        Returns the headers to send: host, x-amz-date, x-amz-content-sha256, Authorization.
        """
        parts = urlsplit(url)
        amz_date = amz_timestamp(timestamp)
        payload_hash = sha256_hex(body)
        headers = {
            "host": parts.netloc,
            "x-amz-content-sha256": payload_hash,
            "x-amz-date": amz_date,
        }

        canonical = canonical_request(method, parts.path, parts.query, headers, payload_hash)
        scope = credential_scope(amz_date[:8], self.region, self.service)
        to_sign = string_to_sign(amz_date, scope, canonical)
        key = derive_signing_key(self.secret_key, amz_date[:8], self.region, self.service)
        signature = hmac.new(key, to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

        headers["Authorization"] = (
            f"{ALGORITHM} Credential={self.access_key}/{scope}, "
            f"SignedHeaders={';'.join(SIGNED_HEADERS)}, Signature={signature}"
        )
        return headers
