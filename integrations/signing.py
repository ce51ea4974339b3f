#!/usr/bin/env python3
"""
AWS Signature Version 4

Request signing and presigned URL generation for S3-compatible services
(Cloudflare R2). Follows the public SigV4 specification: canonical request,
string to sign, derived signing key and the Authorization header or
X-Amz-* query parameters.
"""

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import quote

import httpx

ALGORITHM = "AWS4-HMAC-SHA256"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
EMPTY_SHA256 = hashlib.sha256(b"").hexdigest()
MAX_PRESIGN_EXPIRY = 7 * 24 * 3600


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def uri_encode(value: str, encode_slash: bool = True) -> str:
    """RFC 3986 encoding as required by SigV4."""
    safe = "-_.~" if encode_slash else "-_.~/"
    return quote(value, safe=safe)


def canonical_query(params: Iterable[Tuple[str, str]]) -> str:
    encoded = sorted((uri_encode(k), uri_encode(v)) for k, v in params)
    return "&".join(f"{k}={v}" for k, v in encoded)


def canonical_headers(headers: Mapping[str, str]) -> Tuple[str, str]:
    """Return (canonical header block, signed header list)."""
    normalized: Dict[str, str] = {}
    for name, value in headers.items():
        key = name.lower().strip()
        normalized[key] = " ".join(str(value).strip().split())
    names = sorted(normalized)
    block = "".join(f"{name}:{normalized[name]}\n" for name in names)
    return block, ";".join(names)


class SigV4Signer:
    """Signs requests for a single access key, region and service."""

    def __init__(
        self,
        access_key_id: str,
        secret_access_key: str,
        region: str = "auto",
        service: str = "s3",
        session_token: Optional[str] = None,
    ):
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self.region = region
        self.service = service
        self.session_token = session_token

    def signing_key(self, date_stamp: str) -> bytes:
        k_date = _hmac(f"AWS4{self.secret_access_key}".encode("utf-8"), date_stamp)
        k_region = _hmac(k_date, self.region)
        k_service = _hmac(k_region, self.service)
        return _hmac(k_service, "aws4_request")

    def credential_scope(self, date_stamp: str) -> str:
        return f"{date_stamp}/{self.region}/{self.service}/aws4_request"

    def canonical_request(
        self,
        method: str,
        url: httpx.URL,
        headers: Mapping[str, str],
        payload_hash: str,
        query: Optional[List[Tuple[str, str]]] = None,
    ) -> Tuple[str, str]:
        path = uri_encode(url.path or "/", encode_slash=False)
        params = query if query is not None else list(url.params.multi_items())
        header_block, signed_headers = canonical_headers(headers)
        request = "\n".join(
            [
                method.upper(),
                path,
                canonical_query(params),
                header_block,
                signed_headers,
                payload_hash,
            ]
        )
        return request, signed_headers

    def string_to_sign(self, amz_date: str, scope: str, canonical: str) -> str:
        return "\n".join([ALGORITHM, amz_date, scope, sha256_hex(canonical.encode("utf-8"))])

    def sign(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        payload_hash: str = EMPTY_SHA256,
        now: Optional[datetime] = None,
    ) -> Dict[str, str]:
        """
        Sign a request and return the headers to add to it.

        Args:
            method: HTTP method
            url: Absolute request URL including query string
            headers: Headers that should be covered by the signature
            payload_hash: Hex SHA-256 of the body or UNSIGNED-PAYLOAD
            now: Signing time (defaults to the current UTC time)

        Returns:
            Headers including Authorization, x-amz-date and x-amz-content-sha256
        """
        now = now or datetime.now(timezone.utc)
        amz_date = now.strftime("%Y%m%dT%H%M%SZ")
        date_stamp = now.strftime("%Y%m%d")
        parsed = httpx.URL(url)

        to_sign = {k.lower(): v for k, v in (headers or {}).items()}
        to_sign["host"] = parsed.netloc.decode("ascii")
        to_sign["x-amz-date"] = amz_date
        to_sign["x-amz-content-sha256"] = payload_hash
        if self.session_token:
            to_sign["x-amz-security-token"] = self.session_token

        canonical, signed_headers = self.canonical_request(
            method, parsed, to_sign, payload_hash
        )
        scope = self.credential_scope(date_stamp)
        signature = hmac.new(
            self.signing_key(date_stamp),
            self.string_to_sign(amz_date, scope, canonical).encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

        result = {k: v for k, v in to_sign.items() if k != "host"}
        result["authorization"] = (
            f"{ALGORITHM} Credential={self.access_key_id}/{scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )
        return result

    def presign(
        self,
        method: str,
        url: str,
        expires_in: int = 3600,
        now: Optional[datetime] = None,
    ) -> str:
        """Return a presigned URL valid for ``expires_in`` seconds."""
        if not 1 <= expires_in <= MAX_PRESIGN_EXPIRY:
            raise ValueError(
                f"expires_in must be between 1 and {MAX_PRESIGN_EXPIRY} seconds"
            )

        now = now or datetime.now(timezone.utc)
        amz_date = now.strftime("%Y%m%dT%H%M%SZ")
        date_stamp = now.strftime("%Y%m%d")
        parsed = httpx.URL(url)
        scope = self.credential_scope(date_stamp)

        query = list(parsed.params.multi_items())
        query.extend(
            [
                ("X-Amz-Algorithm", ALGORITHM),
                ("X-Amz-Credential", f"{self.access_key_id}/{scope}"),
                ("X-Amz-Date", amz_date),
                ("X-Amz-Expires", str(expires_in)),
                ("X-Amz-SignedHeaders", "host"),
            ]
        )
        if self.session_token:
            query.append(("X-Amz-Security-Token", self.session_token))

        canonical, _ = self.canonical_request(
            method,
            parsed,
            {"host": parsed.netloc.decode("ascii")},
            UNSIGNED_PAYLOAD,
            query=query,
        )
        signature = hmac.new(
            self.signing_key(date_stamp),
            self.string_to_sign(amz_date, scope, canonical).encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

        query_string = canonical_query(query) + f"&X-Amz-Signature={signature}"
        path = uri_encode(parsed.path or "/", encode_slash=False)
        return f"{parsed.scheme}://{parsed.netloc.decode('ascii')}{path}?{query_string}"


class SigV4Auth(httpx.Auth):
    """httpx auth flow that signs each request with SigV4."""

    requires_request_body = True

    def __init__(self, signer: SigV4Signer, sign_payload: bool = True):
        self.signer = signer
        self.sign_payload = sign_payload

    def auth_flow(self, request: httpx.Request):
        payload_hash = sha256_hex(request.content) if self.sign_payload else UNSIGNED_PAYLOAD
        covered = {
            name: value
            for name, value in request.headers.items()
            if name.lower() in ("content-type", "content-md5", "range")
            or name.lower().startswith("x-amz-")
        }
        signed = self.signer.sign(
            request.method, str(request.url), covered, payload_hash=payload_hash
        )
        request.headers.update(signed)
        yield request
