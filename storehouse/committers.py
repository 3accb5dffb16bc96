import ipaddress
import os
import shutil
import socket
from dataclasses import dataclass, replace
from typing import Any, Iterable, Mapping, Optional, Tuple
from urllib.parse import urlparse

import magic
import requests

from .config import StorehouseConfig
from .events import (
    FETCH_REQUESTED,
    FETCHED,
    UPLOAD_REQUESTED,
    UPLOADED,
    LifecycleEvent,
    Notifier,
    emit,
)
from .logging_utils import get_request_logger, sanitize_log_value
from .signing import SIGNATURE_FIELD, Authenticator
from .staging import (
    ErrorKind,
    Failed,
    MaterializeError,
    Materializer,
    StagingOutcome,
    StagingPipeline,
)

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
SNIFF_SAMPLE_BYTES = 16
DEFAULT_CONTENT_TYPE = "application/octet-stream"

lifecycle_logger = get_request_logger("storehouse.lifecycle")
fetch_logger = get_request_logger("storehouse.fetch")

# Consulted only when libmagic cannot classify a file.
_MAGIC_NUMBERS: Tuple[Tuple[bytes, str], ...] = (
    (b"%PDF-", "application/pdf"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"PK\x03\x04", "application/zip"),
    (b"\x1f\x8b\x08", "application/gzip"),
)


@dataclass(frozen=True)
class IncomingFile:
    """An upload payload already written to a local temporary file."""

    temp_path: str
    content_type: Optional[str] = None
    encoding: Optional[str] = None


class MoveMaterializer(Materializer):
    """Moves a received temporary file onto the target path.

    A failed move leaves nothing at the target, so no cleanup is requested.
    """

    error_code = "error moving file"
    cleanup_on_failure = False

    def __init__(self, source: str) -> None:
        self.source = source

    def __call__(self, target: str) -> None:
        shutil.move(self.source, target)


class StreamMaterializer(Materializer):
    """Streams a remote resource's body straight into the target path."""

    error_code = "error fetching url"

    def __init__(self, url: str, timeout: float) -> None:
        self.url = url
        self.timeout = timeout
        self.bytes_written = 0
        self._opened = False

    @property
    def cleanup_on_failure(self) -> bool:
        # Only a target this materializer has opened can hold partial data.
        return self._opened

    def __call__(self, target: str) -> None:
        response = None
        try:
            response = requests.get(self.url, timeout=self.timeout, stream=True)
            response.raise_for_status()
            self._opened = True
            with open(target, "wb") as handle:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE_BYTES):
                    if chunk:
                        handle.write(chunk)
                        self.bytes_written += len(chunk)
        except requests.RequestException as error:
            fetch_logger.error(
                "url_download_failed url=%s bytes=%d error=%s",
                sanitize_log_value(self.url),
                self.bytes_written,
                sanitize_log_value(str(error)),
            )
            raise MaterializeError(ErrorKind.NETWORK, "error fetching url", str(error)) from error
        finally:
            # Ensure response is properly closed to prevent resource leaks
            if response is not None:
                response.close()


def _heuristic_mime(sample: bytes) -> Optional[str]:
    for prefix, mime_type in _MAGIC_NUMBERS:
        if sample.startswith(prefix):
            return mime_type
    return None


def sniff_content_type(path: str) -> str:
    """Determine a file's MIME type from its bytes, never from its name."""

    try:
        detected = magic.from_file(path, mime=True)
        if detected:
            return str(detected)
    except (magic.MagicException, OSError) as error:
        fetch_logger.warning("mime_sniff_failed path=%s error=%s", path, error)

    try:
        with open(path, "rb") as handle:
            sample = handle.read(SNIFF_SAMPLE_BYTES)
    except OSError as error:
        fetch_logger.warning("mime_sniff_failed path=%s error=%s", path, error)
        return DEFAULT_CONTENT_TYPE
    return _heuristic_mime(sample) or DEFAULT_CONTENT_TYPE


def check_url_allowed(url: str) -> Tuple[bool, Optional[str]]:
    """Reject URLs that are not http(s) or that resolve to non-public hosts."""

    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return False, f"Unsupported URL scheme: {parsed.scheme or '(none)'}. Only http and https are allowed."

    hostname = parsed.hostname
    if not hostname:
        return False, "Invalid URL: missing hostname"

    try:
        addr_info = socket.getaddrinfo(hostname, None)
    except socket.gaierror as error:
        return False, f"Could not resolve hostname '{hostname}': {error}"
    except OSError as error:
        return False, f"Network error resolving hostname '{hostname}': {error}"

    for _, _, _, _, sockaddr in addr_info:
        try:
            ip = ipaddress.ip_address(sockaddr[0])
        except ValueError:
            continue
        if ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved or ip.is_multicast:
            return False, f"Access to non-public address {ip} is not allowed"

    return True, None


class _Committer:
    subject = "request"
    log_prefix = "request"

    def __init__(
        self,
        config: StorehouseConfig,
        notifier: Optional[Notifier] = None,
        authenticator: Optional[Authenticator] = None,
        pipeline: Optional[StagingPipeline] = None,
    ) -> None:
        self.config = config
        self.notifier = notifier
        self.authenticator = authenticator or Authenticator(config.secret, config.signature_algorithm)
        self.pipeline = pipeline or StagingPipeline(config.directory, config.overwrite)

    def _authenticate(
        self,
        fields: Mapping[str, Any],
        required: Iterable[Tuple[str, str, str]],
    ) -> Optional[Failed]:
        for name, error, message in required:
            if not fields.get(name):
                lifecycle_logger.warning("%s_rejected reason=%s", self.log_prefix, error.replace(" ", "_"))
                return Failed(ErrorKind.VALIDATION, error, message)

        if not self.authenticator.verify(fields, fields.get(SIGNATURE_FIELD)):
            lifecycle_logger.warning(
                "%s_rejected reason=invalid_signature path=%s",
                self.log_prefix,
                sanitize_log_value(str(fields.get("path"))),
            )
            return Failed(
                ErrorKind.AUTH,
                "invalid signature",
                f"Signature for this {self.subject} is invalid.",
            )
        return None

    def _check_target(self, path: str, target: str) -> Optional[Failed]:
        if self.config.within_staging_dir(target):
            lifecycle_logger.warning(
                "%s_rejected reason=staging_path path=%s", self.log_prefix, sanitize_log_value(path)
            )
            return Failed(
                ErrorKind.VALIDATION,
                "path not allowed",
                "Files cannot be written into the staging directory.",
            )
        return None

    def _event(self, name: str, path: str, target: str, **extra: Any) -> LifecycleEvent:
        return LifecycleEvent(
            name=name,
            path=path,
            location=os.path.abspath(target),
            directory=os.path.dirname(target),
            **extra,
        )


class UploadCommitter(_Committer):
    subject = "upload"
    log_prefix = "upload"

    def accept(self, fields: Mapping[str, Any], upload: Optional[IncomingFile]) -> StagingOutcome:
        if upload is None:
            lifecycle_logger.warning("upload_rejected reason=file_missing")
            return Failed(ErrorKind.VALIDATION, "file missing", "No file present in request.")

        failure = self._authenticate(
            fields,
            (
                ("path", "path missing", "No path specified in request."),
                (SIGNATURE_FIELD, "signature missing", "No signature specified in request."),
            ),
        )
        if failure is not None:
            return failure

        path = str(fields["path"])
        target = self.pipeline.target_for(path)
        failure = self._check_target(path, target)
        if failure is not None:
            return failure

        emit(
            self.notifier,
            self._event(
                UPLOAD_REQUESTED,
                path,
                target,
                content_type=upload.content_type,
                encoding=upload.encoding,
            ),
        )

        outcome = self.pipeline.run(target, MoveMaterializer(upload.temp_path), path=path)
        if isinstance(outcome, Failed):
            return outcome

        outcome = replace(outcome, content_type=upload.content_type, encoding=upload.encoding)
        lifecycle_logger.info(
            "upload_committed path=%s location=%s size=%d",
            sanitize_log_value(path),
            outcome.location,
            outcome.size,
        )
        emit(
            self.notifier,
            self._event(
                UPLOADED,
                path,
                target,
                size=outcome.size,
                content_type=outcome.content_type,
                encoding=outcome.encoding,
            ),
        )
        return outcome


class FetchCommitter(_Committer):
    subject = "fetch request"
    log_prefix = "fetch"

    def accept(self, fields: Mapping[str, Any]) -> StagingOutcome:
        failure = self._authenticate(
            fields,
            (
                ("url", "url missing", "No url to fetch specified in request."),
                ("path", "path missing", "No path specified in request."),
                (SIGNATURE_FIELD, "signature missing", "No signature specified in request."),
            ),
        )
        if failure is not None:
            return failure

        url = str(fields["url"])
        path = str(fields["path"])

        if self.config.block_private_urls:
            allowed, reason = check_url_allowed(url)
            if not allowed:
                fetch_logger.warning(
                    "url_blocked url=%s reason=%s", sanitize_log_value(url), reason
                )
                return Failed(ErrorKind.VALIDATION, "url not allowed", reason or "URL not allowed")

        target = self.pipeline.target_for(path)
        failure = self._check_target(path, target)
        if failure is not None:
            return failure

        emit(self.notifier, self._event(FETCH_REQUESTED, path, target, url=url))

        materializer = StreamMaterializer(url, self.config.fetch_timeout)
        outcome = self.pipeline.run(target, materializer, path=path)
        if isinstance(outcome, Failed):
            return outcome

        outcome = replace(outcome, content_type=sniff_content_type(target))
        lifecycle_logger.info(
            "fetch_committed url=%s path=%s size=%d type=%s",
            sanitize_log_value(url),
            sanitize_log_value(path),
            outcome.size,
            outcome.content_type,
        )
        emit(
            self.notifier,
            self._event(
                FETCHED,
                path,
                target,
                url=url,
                size=outcome.size,
                content_type=outcome.content_type,
            ),
        )
        return outcome

