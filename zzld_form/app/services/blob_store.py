"""
Azure Blob Storage document store.

Stores rendered declaration forms under ``generated/`` with their metadata
as blob metadata, finds them again by form id, and issues read-only SAS
URLs for download.

Retry policy (tenacity, the only retry layer; the SDK's own retry policy is
disabled when the client is built):
- transient failures (connection errors, timeouts, 408/429/5xx) are retried
  ``retry_count`` times with exponential backoff from ``retry_base_delay``;
- everything else is permanent and raised immediately;
- cancellation is never retried and interrupts a backoff sleep.

Lookup by form id is a linear scan over blob metadata under the prefix.
There is no secondary index, which caps the practical number of stored
forms.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, TypeVar
from urllib.parse import quote, unquote

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceExistsError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.storage.blob import (
    BlobSasPermissions,
    ContentSettings,
    UserDelegationKey,
    generate_blob_sas,
)
from azure.storage.blob.aio import BlobServiceClient, ContainerClient
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from zzld_form.app.core.errors import DocumentNotFoundError, DocumentStoreError
from zzld_form.app.schemas.results import (
    PDF_CONTENT_TYPE,
    StoredDocument,
    StoredDocumentMetadata,
    UploadReceipt,
    utcnow,
)

logger = logging.getLogger("zzld_form.blob_store")

T = TypeVar("T")

GENERATED_PREFIX = "generated"
PDF_EXTENSION = ".pdf"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

# Clock skew allowance for the SAS start time.
SAS_START_SKEW = timedelta(minutes=5)

_TIMESTAMP_RE = re.compile(
    r"^(?P<head>\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<fraction>\d+))?"
    r"(?P<offset>[Zz]|[+-]\d{2}:\d{2})?$"
)

_TRANSIENT_STATUS = frozenset({408, 429, 500, 502, 503, 504})

# Blob metadata travels as HTTP headers and must be ASCII.
_METADATA_SAFE_CHARS = " :+-._@"

META_FORM_ID = "FormId"
META_FULL_NAME = "FullName"
META_GENERATED_AT = "GeneratedAt"
META_EGN = "EGN"
META_EMAIL = "Email"


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def is_transient(exc: BaseException) -> bool:
    """Return True for storage failures worth another attempt."""
    if isinstance(exc, (ServiceRequestError, ServiceResponseError)):
        return True
    if isinstance(exc, HttpResponseError):
        return exc.status_code in _TRANSIENT_STATUS
    return False


def new_blob_name(now: Optional[datetime] = None) -> str:
    stamp = (now or utcnow()).strftime(TIMESTAMP_FORMAT)
    return f"{GENERATED_PREFIX}/{stamp}_{uuid.uuid4().hex}{PDF_EXTENSION}"


def encode_metadata(metadata: StoredDocumentMetadata) -> Dict[str, str]:
    values = {
        META_FORM_ID: metadata.form_id,
        META_FULL_NAME: metadata.full_name,
        META_GENERATED_AT: metadata.generated_at.astimezone(timezone.utc).isoformat(),
        META_EGN: metadata.egn,
        META_EMAIL: metadata.email,
    }
    return {key: quote(value, safe=_METADATA_SAFE_CHARS) for key, value in values.items()}


def parse_timestamp(value: str) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp, naive values taken as UTC.

    Accepts a trailing ``Z`` and more than six fractional digits
    (round-trip format written by .NET clients), which
    ``datetime.fromisoformat`` rejects before Python 3.11.
    """
    match = _TIMESTAMP_RE.match(value.strip()) if value else None
    if match is None:
        return None
    head, fraction, offset = match.group("head", "fraction", "offset")
    if offset in ("Z", "z"):
        offset = "+00:00"
    text = head + (f".{fraction[:6].ljust(6, '0')}" if fraction else "") + (offset or "")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def decode_metadata(raw: Dict[str, str], content_type: Optional[str] = None) -> StoredDocumentMetadata:
    # The service may return metadata keys in a different case.
    lowered = {key.lower(): unquote(value) for key, value in (raw or {}).items()}

    form_id = lowered.get(META_FORM_ID.lower(), "")
    generated_raw = lowered.get(META_GENERATED_AT.lower(), "")
    generated_at = parse_timestamp(generated_raw)
    if generated_at is None:
        logger.warning(
            "generated_at_unparseable",
            extra={"form_id": form_id, "generated_at_raw": generated_raw},
        )
        generated_at = utcnow()

    return StoredDocumentMetadata(
        form_id=form_id,
        full_name=lowered.get(META_FULL_NAME.lower(), ""),
        generated_at=generated_at,
        egn=lowered.get(META_EGN.lower(), ""),
        email=lowered.get(META_EMAIL.lower(), ""),
        content_type=content_type or PDF_CONTENT_TYPE,
    )


def _metadata_form_id(raw: Optional[Dict[str, str]]) -> Optional[str]:
    for key, value in (raw or {}).items():
        if key.lower() == META_FORM_ID.lower():
            return unquote(value)
    return None


# ----------------------------------------------------------------------
# SAS signing
# ----------------------------------------------------------------------

class SasSigner(Protocol):
    async def sign(self, container_name: str, blob_name: str, expires_at: datetime) -> str:
        ...


class SharedKeySasSigner:
    """Service SAS signed with the storage account key."""

    def __init__(self, account_name: str, account_key: str) -> None:
        self._account_name = account_name
        self._account_key = account_key

    async def sign(self, container_name: str, blob_name: str, expires_at: datetime) -> str:
        return generate_blob_sas(
            account_name=self._account_name,
            container_name=container_name,
            blob_name=blob_name,
            account_key=self._account_key,
            permission=BlobSasPermissions(read=True),
            start=utcnow() - SAS_START_SKEW,
            expiry=expires_at,
        )


class UserDelegationSasSigner:
    """
    User delegation SAS for managed identity deployments.

    The delegation key is fetched from the service and reused while it
    outlives the requested expiry.
    """

    def __init__(self, service_client: BlobServiceClient, account_name: str) -> None:
        self._service_client = service_client
        self._account_name = account_name
        self._key: Optional[UserDelegationKey] = None
        self._key_expiry: Optional[datetime] = None

    async def _delegation_key(self, expires_at: datetime) -> UserDelegationKey:
        if self._key is None or self._key_expiry is None or self._key_expiry < expires_at:
            start = utcnow() - SAS_START_SKEW
            key_expiry = expires_at + timedelta(hours=1)
            self._key = await self._service_client.get_user_delegation_key(
                key_start_time=start,
                key_expiry_time=key_expiry,
            )
            self._key_expiry = key_expiry
        return self._key

    async def sign(self, container_name: str, blob_name: str, expires_at: datetime) -> str:
        key = await self._delegation_key(expires_at)
        return generate_blob_sas(
            account_name=self._account_name,
            container_name=container_name,
            blob_name=blob_name,
            user_delegation_key=key,
            permission=BlobSasPermissions(read=True),
            start=utcnow() - SAS_START_SKEW,
            expiry=expires_at,
        )


# ----------------------------------------------------------------------
# Store
# ----------------------------------------------------------------------

class DocumentStore(Protocol):
    async def upload(self, data: bytes, metadata: StoredDocumentMetadata) -> UploadReceipt:
        ...

    async def find_by_id(self, form_id: str) -> StoredDocument:
        ...

    async def issue_access_url(self, locator: str, ttl: timedelta) -> str:
        ...


class AzureBlobDocumentStore:
    """
    Document store backed by one Azure Blob container.

    The container client is injected; the store owns its lifetime and
    closes it in ``close()``.
    """

    def __init__(
        self,
        *,
        container_client: ContainerClient,
        sas_signer: SasSigner,
        upload_url_ttl: timedelta = timedelta(hours=24),
        lookup_url_ttl: timedelta = timedelta(hours=24),
        retry_count: int = 3,
        retry_base_delay: float = 1.0,
        closers: tuple[Callable[[], Awaitable[Any]], ...] = (),
    ) -> None:
        self._container = container_client
        self._signer = sas_signer
        self._upload_url_ttl = upload_url_ttl
        self._lookup_url_ttl = lookup_url_ttl
        self._retry_count = retry_count
        self._retry_base_delay = retry_base_delay
        self._closers = closers
        self._container_ready = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def upload(self, data: bytes, metadata: StoredDocumentMetadata) -> UploadReceipt:
        """
        Store ``data`` under a fresh locator and return a download URL.

        Raises:
            ValueError: empty payload.
            DocumentStoreError: permanent failure or retries exhausted.
        """
        if not data:
            raise ValueError("PDF bytes cannot be empty")

        blob_metadata = encode_metadata(metadata)
        # One name per form: a retry must land on the same blob.
        blob_name = new_blob_name()
        attempts = 0

        async def attempt() -> str:
            nonlocal attempts
            attempts += 1
            await self._ensure_container()
            try:
                await self._container.upload_blob(
                    name=blob_name,
                    data=data,
                    metadata=blob_metadata,
                    content_settings=ContentSettings(content_type=metadata.content_type),
                    overwrite=False,
                )
            except ResourceExistsError:
                if attempts == 1:
                    raise
                # An earlier attempt was written but its response was lost.
                logger.info(
                    "upload_already_committed",
                    extra={"form_id": metadata.form_id, "blob_name": blob_name},
                )
            return blob_name

        await self._call("upload_blob", attempt)

        expires_at = utcnow() + self._upload_url_ttl
        download_url = await self._signed_url(blob_name, expires_at)

        logger.info(
            "form_uploaded",
            extra={
                "form_id": metadata.form_id,
                "blob_name": blob_name,
                "size_bytes": len(data),
            },
        )
        return UploadReceipt(
            locator=blob_name,
            download_url=download_url,
            expires_at=expires_at,
        )

    async def find_by_id(self, form_id: str) -> StoredDocument:
        """
        Locate the blob whose ``FormId`` metadata equals ``form_id``.

        Raises:
            ValueError: blank form id.
            DocumentNotFoundError: no blob carries the id.
            DocumentStoreError: permanent failure or retries exhausted.
        """
        if not form_id or not form_id.strip():
            raise ValueError("Form ID cannot be empty")

        async def attempt() -> Optional[StoredDocument]:
            async for blob in self._container.list_blobs(
                name_starts_with=f"{GENERATED_PREFIX}/",
                include=["metadata"],
            ):
                if _metadata_form_id(blob.metadata) != form_id:
                    continue

                content_settings = getattr(blob, "content_settings", None)
                metadata = decode_metadata(
                    blob.metadata,
                    getattr(content_settings, "content_type", None),
                )
                expires_at = utcnow() + self._lookup_url_ttl
                return StoredDocument(
                    locator=blob.name,
                    download_url="",
                    expires_at=expires_at,
                    metadata=metadata,
                )
            return None

        found = await self._call("list_blobs", attempt)
        if found is None:
            logger.info("form_not_found", extra={"form_id": form_id})
            raise DocumentNotFoundError(form_id)

        download_url = await self._signed_url(found.locator, found.expires_at)
        return found.model_copy(update={"download_url": download_url})

    async def issue_access_url(self, locator: str, ttl: timedelta) -> str:
        """Read-only SAS URL for an existing blob, valid for ``ttl``."""
        if not locator:
            raise ValueError("Locator cannot be empty")
        return await self._signed_url(locator, utcnow() + ttl)

    async def close(self) -> None:
        await self._container.close()
        for closer in self._closers:
            await closer()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _ensure_container(self) -> None:
        if self._container_ready:
            return
        try:
            await self._container.create_container()
            logger.info(
                "container_created",
                extra={"container": self._container.container_name},
            )
        except ResourceExistsError:
            pass
        self._container_ready = True

    async def _signed_url(self, blob_name: str, expires_at: datetime) -> str:
        async def sign() -> str:
            return await self._signer.sign(
                self._container.container_name,
                blob_name,
                expires_at,
            )

        token = await self._call("sign_url", sign)
        blob_url = self._container.get_blob_client(blob_name).url
        return f"{blob_url}?{token}"

    async def _call(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._retry_count + 1),
            wait=wait_exponential(multiplier=self._retry_base_delay, exp_base=2),
            retry=retry_if_exception(is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await func()
        except AzureError as exc:
            logger.error(
                "storage_operation_failed",
                extra={
                    "operation": operation,
                    "error_type": type(exc).__name__,
                    "transient": is_transient(exc),
                },
            )
            raise DocumentStoreError(
                f"Storage operation '{operation}' failed: {_describe(exc)}"
            ) from exc


def _describe(exc: AzureError) -> str:
    if isinstance(exc, HttpResponseError) and exc.status_code is not None:
        return f"HTTP {exc.status_code} {exc.reason or ''}".strip()
    return type(exc).__name__


# ----------------------------------------------------------------------
# Construction from settings
# ----------------------------------------------------------------------

def build_blob_document_store(settings) -> AzureBlobDocumentStore:
    """
    Wire an AzureBlobDocumentStore from application settings.

    Connection-string deployments sign URLs with the account key; managed
    identity deployments use DefaultAzureCredential and user delegation SAS.
    """
    client_kwargs = {"retry_total": 0}
    closers: list[Callable[[], Awaitable[Any]]] = []

    if settings.use_managed_identity:
        from azure.identity.aio import DefaultAzureCredential

        credential = DefaultAzureCredential()
        service_client = BlobServiceClient(
            account_url=settings.account_url,
            credential=credential,
            **client_kwargs,
        )
        signer: SasSigner = UserDelegationSasSigner(
            service_client,
            settings.storage_account_name,
        )
        closers.extend([service_client.close, credential.close])
    else:
        service_client = BlobServiceClient.from_connection_string(
            settings.storage_connection_string.get_secret_value(),
            **client_kwargs,
        )
        shared_key = service_client.credential
        account_key = getattr(shared_key, "account_key", None)
        if not account_key:
            raise ValueError(
                "storage_connection_string must contain an AccountKey "
                "to sign download URLs"
            )
        signer = SharedKeySasSigner(service_client.account_name, account_key)
        closers.append(service_client.close)

    container_client = service_client.get_container_client(
        settings.storage_container_name
    )

    return AzureBlobDocumentStore(
        container_client=container_client,
        sas_signer=signer,
        upload_url_ttl=timedelta(hours=settings.access_url_ttl_hours),
        lookup_url_ttl=timedelta(hours=settings.retrieval_url_ttl_hours),
        retry_count=settings.retry_count,
        retry_base_delay=settings.retry_base_delay_ms / 1000.0,
        closers=tuple(closers),
    )
