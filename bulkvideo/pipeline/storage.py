"""
Asset Store Gateway — S3-compatible object storage for pipeline artifacts.

Durable records only ever hold a logical reference (``s3://bucket/key``).
Short-lived signed URLs are derived from it on demand, and a signed URL that
stops working (expired signature, 403/404) is re-signed and retried rather
than treated as a permanent failure.

Uses boto3 for signing and object writes, httpx for streamed reads.
"""

import io
import os
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import IO, Optional
from urllib.parse import urlparse, urlencode, parse_qsl, urlunparse, unquote

import boto3
import httpx
from botocore.config import Config as BotoConfig

from ..errors import ArtifactUnavailableError

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL", "https://s3.eu-central-1.wasabisys.com")
S3_REGION = os.getenv("S3_REGION", "eu-central-1")
S3_ACCESS_KEY_ID = os.getenv("S3_ACCESS_KEY_ID", "")
S3_SECRET_ACCESS_KEY = os.getenv("S3_SECRET_ACCESS_KEY", "")
S3_IMAGES_BUCKET = os.getenv("S3_IMAGES_BUCKET", "pmax-images")
S3_VIDEOS_BUCKET = os.getenv("S3_VIDEOS_BUCKET", "pmax-videos")

READ_URL_EXPIRY = 7 * 24 * 3600  # 7 days, the SigV4 maximum
WRITE_URL_EXPIRY = 3600
SIGNED_URL_RETRIES = 2
CHUNK_SIZE = 1024 * 1024

SIGNING_PARAMS = {"signature", "expires", "awsaccesskeyid", "x-id"}
RETRYABLE_SIGNED_STATUS = {403, 404}
# A 400 is only a stale signature when the body says so
EXPIRED_SIGNATURE_MARKERS = ("ExpiredToken", "AccessDenied", "Request has expired")


class AccessMode(str, Enum):
    READ = "read"
    WRITE = "write"


@dataclass(frozen=True)
class ArtifactRef:
    bucket: str
    key: str

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"

    @property
    def filename(self) -> str:
        return self.key.rsplit("/", 1)[-1]

    @classmethod
    def parse(cls, uri: str) -> "ArtifactRef":
        parsed = urlparse(uri)
        if parsed.scheme != "s3" or not parsed.netloc or not parsed.path.strip("/"):
            raise ValueError(f"Not an artifact reference: {uri!r}")
        return cls(bucket=parsed.netloc, key=unquote(parsed.path.lstrip("/")))

    def __str__(self) -> str:
        return self.uri


# ── Helpers ──────────────────────────────────────────────────────────────────

def strip_signing_params(url: str) -> str:
    """Remove presigning query parameters (X-Amz-*, Signature, Expires…)."""
    parsed = urlparse(url)
    if not parsed.query:
        return url
    kept = [
        (k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
        if not k.lower().startswith("x-amz-") and k.lower() not in SIGNING_PARAMS
    ]
    return urlunparse(parsed._replace(query=urlencode(kept)))


async def _is_stale_signature(resp: httpx.Response) -> bool:
    if resp.status_code in RETRYABLE_SIGNED_STATUS:
        return True
    if resp.status_code != 400:
        return False
    body = (await resp.aread()).decode("utf-8", errors="replace")
    return any(marker in body for marker in EXPIRED_SIGNATURE_MARKERS)


def scene_image_key(item_id: str, order: int, suffix: str, ext: str = "png") -> str:
    return f"scenes/{item_id}/scene-{order}-{suffix}.{ext}"


def animation_key(item_id: str, scene_id: str, suffix: str) -> str:
    return f"animations/{item_id}/{scene_id}-{suffix}.mp4"


def render_key(item_id: str, fmt: str, suffix: str) -> str:
    return f"renders/{item_id}/{fmt}-{suffix}.mp4"


def logo_key(batch_id: str) -> str:
    return f"logos/{batch_id}/logo.png"


ITEM_KEY_PREFIXES = ("scenes", "animations", "renders")
BATCH_KEY_PREFIXES = ("logos",)
SHARED_KEY_PREFIXES = ("samples",)


def key_owner(key: str) -> tuple[str, Optional[str]]:
    """
    Who a key built by the helpers above belongs to:
    ("item", item_id), ("batch", batch_id) or ("shared", None).
    """
    prefix, _, rest = key.partition("/")
    owner_id = rest.split("/", 1)[0] if "/" in rest else ""
    if prefix in SHARED_KEY_PREFIXES:
        return "shared", None
    if prefix in ITEM_KEY_PREFIXES and owner_id:
        return "item", owner_id
    if prefix in BATCH_KEY_PREFIXES and owner_id:
        return "batch", owner_id
    raise ValueError(f"Key {key!r} does not belong to any item or batch")


class AssetStoreGateway:
    """
    Signs, reads, writes and deletes artifacts in an S3-compatible store.

    Usage:
        gateway = AssetStoreGateway()
        ref = await gateway.upload_bytes("scenes/x/scene-0.png", data, "image/png")
        url = gateway.presign(ref)                      # short-lived read URL
        with open(path, "wb") as f:
            await gateway.download_to(ref, f)           # re-signs on 403/404
    """

    def __init__(
        self,
        endpoint_url: str = S3_ENDPOINT_URL,
        region: str = S3_REGION,
        access_key_id: str = S3_ACCESS_KEY_ID,
        secret_access_key: str = S3_SECRET_ACCESS_KEY,
        images_bucket: str = S3_IMAGES_BUCKET,
        videos_bucket: str = S3_VIDEOS_BUCKET,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint_url = endpoint_url.rstrip("/")
        self.region = region
        self.images_bucket = images_bucket
        self.videos_bucket = videos_bucket
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._transport = transport
        self._client = None

    @property
    def endpoint_host(self) -> str:
        return urlparse(self.endpoint_url).hostname or ""

    def _s3(self):
        """Lazy-init boto3 client (path-style so refs map 1:1 onto URLs)."""
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=self.endpoint_url,
                aws_access_key_id=self._access_key_id or None,
                aws_secret_access_key=self._secret_access_key or None,
                config=BotoConfig(signature_version="s3v4", s3={"addressing_style": "path"}),
                region_name=self.region,
            )
        return self._client

    def bucket_for(self, content_type: str) -> str:
        return self.videos_bucket if content_type.startswith("video/") else self.images_bucket

    # ── Contract: presign / extract_ref / delete ─────────────────────────

    def presign(
        self,
        ref,
        mode: AccessMode = AccessMode.READ,
        download_filename: Optional[str] = None,
        expires_in: Optional[int] = None,
        content_type: Optional[str] = None,
    ) -> str:
        """Issue a time-limited URL for reading (optionally as a download) or writing."""
        ref = self.as_ref(ref)
        params = {"Bucket": ref.bucket, "Key": ref.key}

        if mode == AccessMode.WRITE:
            if content_type:
                params["ContentType"] = content_type
            return self._s3().generate_presigned_url(
                "put_object", Params=params, ExpiresIn=expires_in or WRITE_URL_EXPIRY
            )

        if download_filename:
            params["ResponseContentDisposition"] = f'attachment; filename="{download_filename}"'
        return self._s3().generate_presigned_url(
            "get_object", Params=params, ExpiresIn=expires_in or READ_URL_EXPIRY
        )

    @property
    def buckets(self) -> frozenset:
        return frozenset({self.images_bucket, self.videos_bucket})

    def _match(self, url: str) -> Optional[ArtifactRef]:
        """The bucket/key a URL addresses, if that bucket is one of ours."""
        parsed = urlparse(url)
        if parsed.scheme == "s3":
            bucket, key = parsed.netloc, unquote(parsed.path.lstrip("/"))
        else:
            host = (parsed.hostname or "").lower()
            if not host:
                return None
            path = unquote(parsed.path.lstrip("/"))
            endpoint = self.endpoint_host.lower()
            if host == endpoint:
                bucket, _, key = path.partition("/")
            elif endpoint and host.endswith("." + endpoint):
                bucket, key = host[: -len(endpoint) - 1], path
            elif ".s3." in host:
                # Virtual-hosted URL on another regional host of the same provider
                bucket, key = host.split(".s3.", 1)[0], path
            else:
                return None

        if bucket not in self.buckets or not key:
            return None
        return ArtifactRef(bucket=bucket, key=key)

    def is_store_url(self, url: str) -> bool:
        return self._match(url) is not None

    def extract_ref(self, url: str) -> ArtifactRef:
        """
        Recover the logical reference from any URL this store produced.

        Handles s3:// refs, path-style (host/bucket/key) and virtual-hosted
        (bucket.host/key) URLs, with or without signing parameters. Only the
        configured buckets count; anything else is a foreign URL.
        """
        ref = self._match(url)
        if ref is None:
            raise ValueError(f"URL does not belong to the asset store: {url[:120]}")
        return ref

    def as_ref(self, value) -> ArtifactRef:
        if isinstance(value, ArtifactRef):
            return value
        return self.extract_ref(value)

    def persistable_ref(self, url: str) -> str:
        """What to store in a durable record: the logical ref, never a signed URL."""
        if self.is_store_url(url):
            return self.extract_ref(url).uri
        return strip_signing_params(url)

    def refresh_url(self, url: str, download_filename: Optional[str] = None) -> str:
        return self.presign(self.extract_ref(url), download_filename=download_filename)

    def resolve_read_url(self, value: str) -> str:
        """Signed URL for store refs; external URLs pass through untouched."""
        if self.is_store_url(value):
            return self.presign(self.extract_ref(value))
        return value

    async def delete(self, ref):
        ref = self.as_ref(ref)
        await asyncio.to_thread(self._s3().delete_object, Bucket=ref.bucket, Key=ref.key)
        logger.info(f"Deleted artifact {ref.uri}")

    # ── Writes ───────────────────────────────────────────────────────────

    async def upload_bytes(self, key: str, data: bytes, content_type: str = "image/png") -> ArtifactRef:
        ref = ArtifactRef(bucket=self.bucket_for(content_type), key=key)
        try:
            await asyncio.to_thread(
                self._s3().put_object,
                Bucket=ref.bucket, Key=ref.key, Body=data, ContentType=content_type,
            )
        except Exception as e:
            logger.error(f"Upload failed for {ref.uri}: {e}")
            raise
        logger.info(f"Uploaded {len(data)} bytes to {ref.uri}")
        return ref

    async def upload_file(self, path: str, key: str, content_type: str = "video/mp4") -> ArtifactRef:
        ref = ArtifactRef(bucket=self.bucket_for(content_type), key=key)
        await asyncio.to_thread(
            self._s3().upload_file, path, ref.bucket, ref.key,
            ExtraArgs={"ContentType": content_type},
        )
        logger.info(f"Uploaded {path} to {ref.uri}")
        return ref

    async def copy_from_url(self, url: str, key: str, content_type: str = "video/mp4") -> ArtifactRef:
        """Persist a provider-hosted artifact into the store."""
        async with httpx.AsyncClient(timeout=300, follow_redirects=True, transport=self._transport) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            data = resp.content
        return await self.upload_bytes(key, data, content_type)

    # ── Reads ────────────────────────────────────────────────────────────

    async def fetch_bytes(self, value: str) -> bytes:
        """Small reads (reference images). External URLs are fetched directly."""
        if not self.is_store_url(value):
            async with httpx.AsyncClient(timeout=30, follow_redirects=True, transport=self._transport) as client:
                resp = await client.get(value)
                resp.raise_for_status()
                return resp.content

        buffer = io.BytesIO()
        await self.download_to(self.extract_ref(value), buffer)
        return buffer.getvalue()

    async def download_to(self, ref, fileobj: IO[bytes]):
        """
        Stream an artifact into fileobj through a freshly signed read URL.

        An access error from the signed URL is retried with a new signature
        up to SIGNED_URL_RETRIES times; the partial write is discarded first.
        """
        ref = self.as_ref(ref)
        last_error = ""

        async with httpx.AsyncClient(timeout=120, follow_redirects=True, transport=self._transport) as client:
            for attempt in range(SIGNED_URL_RETRIES + 1):
                url = self.presign(ref)
                try:
                    async with client.stream("GET", url) as resp:
                        if await _is_stale_signature(resp):
                            last_error = f"HTTP {resp.status_code}"
                            logger.warning(
                                f"Signed URL for {ref.uri} returned {resp.status_code} "
                                f"(attempt {attempt + 1}/{SIGNED_URL_RETRIES + 1}), re-signing"
                            )
                            continue
                        resp.raise_for_status()
                        if attempt:
                            fileobj.seek(0)
                            fileobj.truncate()
                        async for chunk in resp.aiter_bytes(CHUNK_SIZE):
                            fileobj.write(chunk)
                        return
                except httpx.TransportError as e:
                    last_error = str(e)
                    logger.warning(f"Transport error fetching {ref.uri}: {e}")
                except httpx.HTTPStatusError as e:
                    raise ArtifactUnavailableError(f"{ref.uri}: HTTP {e.response.status_code}") from e

        raise ArtifactUnavailableError(f"{ref.uri} unavailable after {SIGNED_URL_RETRIES + 1} attempts: {last_error}")
