import os
import tempfile
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from flask import Flask, Response, abort, g, jsonify, request, send_from_directory
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage

from .committers import FetchCommitter, IncomingFile, UploadCommitter
from .config import StorehouseConfig
from .events import Notifier
from .logging_utils import get_request_logger, sanitize_log_value
from .signing import Authenticator
from .staging import ErrorKind, StagingOutcome, StagingPipeline

BYTES_PER_MB = 1024 * 1024

lifecycle_logger = get_request_logger("storehouse.lifecycle")


class WriteConcurrencyLimiter:
    """Track in-flight write requests and enforce a configurable cap."""

    def __init__(self, limit: int) -> None:
        self._limit = max(1, int(limit))
        self._active = 0
        self._lock = threading.Lock()

    def acquire(self) -> bool:
        with self._lock:
            if self._active >= self._limit:
                return False
            self._active += 1
            return True

    def release(self) -> None:
        with self._lock:
            if self._active > 0:
                self._active -= 1

    def available_slots(self) -> int:
        with self._lock:
            return max(self._limit - self._active, 0)


@contextmanager
def write_slot(limiter: WriteConcurrencyLimiter) -> Iterator[bool]:
    acquired = limiter.acquire()
    try:
        yield acquired
    finally:
        if acquired:
            limiter.release()


def _close_stream_safely(stream: Any, context: str) -> None:
    """Close an upload/input stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        lifecycle_logger.warning(
            "stream_close_failed context=%s error=%s",
            context,
            sanitize_log_value(str(error)),
        )


def stage_upload(file_storage: FileStorage, staging_dir: str) -> IncomingFile:
    """Persist the multipart payload to a temporary file under *staging_dir*."""

    os.makedirs(staging_dir, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix="upload_", suffix=".tmp", dir=staging_dir)
    try:
        with os.fdopen(fd, "wb") as handle:
            file_storage.save(handle)
    except Exception:
        discard_staged_upload(temp_path)
        raise
    finally:
        _close_stream_safely(
            getattr(file_storage, "stream", None),
            f"stage_upload filename={sanitize_log_value(file_storage.filename or 'unknown')}",
        )
    return IncomingFile(
        temp_path=temp_path,
        content_type=file_storage.mimetype or None,
        encoding=file_storage.headers.get("Content-Transfer-Encoding"),
    )


def discard_staged_upload(temp_path: str) -> None:
    try:
        os.remove(temp_path)
    except FileNotFoundError:
        return
    except OSError as error:
        lifecycle_logger.warning(
            "temp_cleanup_failed path=%s error=%s", temp_path, sanitize_log_value(str(error))
        )


def _error_response(status: int, error: str, kind: ErrorKind, message: str):
    return jsonify({"error": error, "kind": kind.value, "message": message}), status


def _outcome_response(outcome: StagingOutcome):
    return jsonify(outcome.to_payload()), outcome.status


def create_app(
    config: StorehouseConfig,
    notifier: Optional[Notifier] = None,
    **flask_config: Any,
) -> Flask:
    """Build the Flask application serving the upload and fetch endpoints.

    Extra keyword arguments are applied to ``app.config`` before any
    extension is initialised (e.g. ``TESTING=True``,
    ``RATELIMIT_ENABLED=False``).
    """

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = int(config.max_upload_size_mb * BYTES_PER_MB)
    app.config.update(flask_config)

    limiter = Limiter(
        app=app,
        key_func=get_remote_address,
        default_limits=[],
        storage_uri=os.environ.get("STOREHOUSE_RATE_LIMIT_STORAGE", "memory://"),
    )
    write_limiter = WriteConcurrencyLimiter(config.max_concurrent_writes)

    authenticator = Authenticator(config.secret, config.signature_algorithm)
    pipeline = StagingPipeline(config.directory, config.overwrite)
    upload_committer = UploadCommitter(config, notifier, authenticator, pipeline)
    fetch_committer = FetchCommitter(config, notifier, authenticator, pipeline)
    write_paths = {config.upload_url, config.fetch_url}

    app.extensions["storehouse"] = {
        "config": config,
        "authenticator": authenticator,
        "write_limiter": write_limiter,
        "limiter": limiter,
    }

    @app.before_request
    def add_request_id() -> None:
        """Assign a request identifier for downstream logging."""

        g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)

    @app.after_request
    def log_request_completion(response: Response):
        lifecycle_logger.info(
            "request_completed method=%s path=%s status=%d",
            request.method,
            sanitize_log_value(request.path),
            response.status_code,
        )
        return response

    @app.after_request
    def add_response_headers(response: Response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = g.request_id
        return response

    if config.cors:

        @app.after_request
        def allow_cors(response: Response):
            if request.path not in write_paths:
                return response
            response.headers["Access-Control-Allow-Origin"] = config.cors_origin
            response.headers["Access-Control-Allow-Methods"] = "POST"
            requested_headers = request.headers.get("Access-Control-Request-Headers")
            if requested_headers:
                response.headers["Access-Control-Allow-Headers"] = requested_headers
            return response

    @app.errorhandler(413)
    def handle_file_too_large(error):  # pragma: no cover - framework hook
        return _error_response(
            413,
            "file too large",
            ErrorKind.VALIDATION,
            f"Uploads are limited to {config.max_upload_size_mb} MB.",
        )

    @app.errorhandler(429)
    def handle_rate_limit(error):  # pragma: no cover - framework hook
        description = getattr(error, "description", "Too many requests")
        return _error_response(429, "rate limit exceeded", ErrorKind.VALIDATION, str(description))

    @app.route(config.upload_url, methods=["POST"])
    @limiter.limit(lambda: config.write_rate_limit)
    def upload():
        with write_slot(write_limiter) as acquired:
            if not acquired:
                lifecycle_logger.warning("upload_rejected reason=too_many_concurrent_requests")
                return _error_response(
                    503, "too many concurrent requests", ErrorKind.IO, "Try again later."
                )

            fields = request.form.to_dict()
            file_storage = request.files.get("file")
            incoming = None
            if isinstance(file_storage, FileStorage) and file_storage.filename:
                incoming = stage_upload(file_storage, config.staging_dir)

            try:
                outcome = upload_committer.accept(fields, incoming)
            finally:
                # a committed upload has already been moved away
                if incoming is not None:
                    discard_staged_upload(incoming.temp_path)
            return _outcome_response(outcome)

    @app.route(config.fetch_url, methods=["POST"])
    @limiter.limit(lambda: config.write_rate_limit)
    def fetch():
        with write_slot(write_limiter) as acquired:
            if not acquired:
                lifecycle_logger.warning("fetch_rejected reason=too_many_concurrent_requests")
                return _error_response(
                    503, "too many concurrent requests", ErrorKind.IO, "Try again later."
                )

            outcome = fetch_committer.accept(request.form.to_dict())
            return _outcome_response(outcome)

    if config.allow_download:
        download_root = os.path.abspath(config.directory)
        download_rule = config.download_prefix.rstrip("/") + "/<path:filename>"

        @app.route(download_rule, methods=["GET"])
        def download(filename: str):
            if config.within_staging_dir(os.path.join(download_root, filename)):
                abort(404)
            return send_from_directory(download_root, filename)

    lifecycle_logger.info(
        "storehouse_configured directory=%s upload_url=%s fetch_url=%s overwrite=%s "
        "download=%s cors=%s signature=%s secret_fingerprint=%s",
        os.path.abspath(config.directory),
        config.upload_url,
        config.fetch_url,
        config.overwrite,
        config.allow_download,
        config.cors,
        config.signature_algorithm,
        config.secret_fingerprint(),
    )
    return app
