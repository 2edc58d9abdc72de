import logging
import re
import sys
import uuid
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from secrets import compare_digest
from typing import Any, Iterator, Optional, Sequence
from urllib.parse import quote

from flask import (
    Blueprint,
    Flask,
    Request,
    Response,
    abort,
    current_app,
    g,
    has_request_context,
    jsonify,
    render_template,
    request,
    send_file,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import BadRequest, HTTPException
from werkzeug.formparser import FormDataParser
from werkzeug.http import HTTP_STATUS_CODES

from .config import ShareConfig, load_config
from .storage import (
    StorageError,
    get_storage_status,
    list_stored_files,
    resolve_download_path,
    store_upload,
)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
CONFIG_KEY = "FILESHARE"

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")
_PLAIN_FILENAME_PATTERN = re.compile(r"^[\x20-\x7e]+$")


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)


_base_lifecycle_logger = logging.getLogger("fileshare.lifecycle")
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)


class _BelowLevelFilter(logging.Filter):
    """Pass only records strictly below *level*."""

    def __init__(self, level: int) -> None:
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < self.level


def configure_logging(level_name: str = "INFO", log_file: Optional[Path] = None) -> int:
    """Route informational logs to stdout and warnings/errors to stderr.

    When *log_file* is given a rotating file handler is attached as well.
    Returns the numeric level that was applied.
    """

    level = getattr(logging, (level_name or "INFO").upper(), None)
    if not isinstance(level, int):
        level = logging.INFO

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.addFilter(_BelowLevelFilter(logging.WARNING))
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.WARNING)
    handlers = [stdout_handler, stderr_handler]

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_file,
                maxBytes=LOG_FILE_MAX_BYTES,
                backupCount=LOG_FILE_BACKUP_COUNT,
                encoding="utf-8",
            )
        )

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    _base_lifecycle_logger.setLevel(level)
    return level


def passwords_match(provided: Optional[str], expected: str) -> bool:
    """Compare a client-supplied password with the shared one verbatim."""

    if provided is None:
        return False
    return compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def status_response(status_code: int) -> Response:
    """Plain-text response carrying only the status and its reason phrase."""

    if status_code == 200:
        return Response(status=200)
    return Response(
        HTTP_STATUS_CODES.get(status_code, "Unknown Error"),
        status=status_code,
        mimetype="text/plain",
    )


def content_disposition(filename: str) -> str:
    if _PLAIN_FILENAME_PATTERN.match(filename):
        return f"attachment; filename={filename}"
    return f"attachment; filename*=UTF-8''{quote(filename, safe='')}"


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


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        _close_stream_safely(
            getattr(file_storage, "stream", None),
            f"upload_stream_handler filename={sanitize_log_value(file_storage.filename or '')}",
        )


class StrictFormDataParser(FormDataParser):
    """Form parser that raises on malformed bodies instead of returning an empty form."""

    def __init__(self, *args, **kwargs) -> None:
        kwargs["silent"] = False
        super().__init__(*args, **kwargs)


class ShareRequest(Request):
    form_data_parser_class = StrictFormDataParser


def share_config() -> ShareConfig:
    return current_app.config[CONFIG_KEY]


bp = Blueprint("fileshare", __name__)
UNLIMITED_ENDPOINTS = {"fileshare.health_check"}


@bp.before_app_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@bp.after_app_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d size=%s",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
        response.content_length or 0,
    )
    return response


@bp.after_app_request
def add_security_headers(response: Response):
    """Attach security-focused response headers."""

    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = (
        "default-src 'self'; "
        "script-src 'self' 'unsafe-inline'; "
        "style-src 'self' 'unsafe-inline';"
    )
    return response


@bp.after_app_request
def add_request_id_header(response: Response):
    """Expose the current request identifier to clients."""

    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


def handle_http_error(error: HTTPException):
    return status_response(error.code or 500)


@bp.route("/")
def index():
    config = share_config()
    try:
        names = list_stored_files(config.directory)
    except StorageError as error:
        lifecycle_logger.exception(
            "listing_failed path=%s error=%s",
            sanitize_log_value(str(config.directory)),
            sanitize_log_value(str(error)),
        )
        abort(500)
    return render_template("index.html", files=names)


@bp.route("/upload", methods=["POST"])
def upload():
    config = share_config()
    try:
        form = request.form
        files = request.files
    except (BadRequest, OSError, ValueError) as error:
        lifecycle_logger.error(
            "upload_failed reason=parse_error error=%s", sanitize_log_value(str(error))
        )
        abort(500)

    if not passwords_match(form.get("password"), config.password):
        lifecycle_logger.debug("upload_rejected reason=password_mismatch")
        abort(401)

    upload_storage = files.get("file")
    if upload_storage is None:
        lifecycle_logger.error("upload_failed reason=no_file_part")
        abort(500)

    with upload_stream_handler(upload_storage) as uploaded:
        filename = uploaded.filename or ""
        try:
            target = store_upload(config.directory, filename, uploaded.stream)
        except StorageError as error:
            lifecycle_logger.exception(
                "upload_failed reason=storage filename=%s error=%s",
                sanitize_log_value(filename),
                sanitize_log_value(str(error)),
            )
            abort(500)

    lifecycle_logger.info("file_uploaded path=%s", sanitize_log_value(str(target)))
    return status_response(200)


@bp.route("/download/<filename>")
def download(filename: str):
    config = share_config()
    file_path = resolve_download_path(config.download_root, filename)
    if file_path is None:
        lifecycle_logger.info("file_download_missing filename=%s", sanitize_log_value(filename))
        abort(404)

    if not passwords_match(request.args.get("password"), config.password):
        lifecycle_logger.debug("file_download_rejected reason=password_mismatch")
        abort(401)

    try:
        response = send_file(
            file_path.absolute(),
            mimetype="application/octet-stream",
            conditional=False,
            etag=False,
        )
    except FileNotFoundError:
        lifecycle_logger.warning(
            "file_download_missing_race filename=%s", sanitize_log_value(filename)
        )
        abort(404)
    except OSError as error:
        lifecycle_logger.exception(
            "file_download_error filename=%s error=%s",
            sanitize_log_value(filename),
            sanitize_log_value(str(error)),
        )
        abort(500)

    response.headers["Content-Disposition"] = content_disposition(filename)
    lifecycle_logger.info("file_downloaded filename=%s", sanitize_log_value(filename))
    return response


@bp.route("/health")
def health_check():
    storage = get_storage_status(share_config().directory)
    healthy = bool(storage["exists"] and storage["writable"])
    payload = {"status": "healthy" if healthy else "unhealthy", "storage": storage}
    return jsonify(payload), 200 if healthy else 503


def create_app(config: ShareConfig) -> Flask:
    """Build the file-sharing application around an immutable *config*."""

    app = Flask(__name__)
    app.request_class = ShareRequest
    app.config[CONFIG_KEY] = config
    app.config["RATELIMIT_ENABLED"] = bool(config.rate_limit)
    app.register_blueprint(bp)
    app.register_error_handler(HTTPException, handle_http_error)
    Limiter(
        app=app,
        key_func=get_remote_address,
        default_limits=[config.rate_limit] if config.rate_limit else [],
        default_limits_exempt_when=lambda: request.endpoint in UNLIMITED_ENDPOINTS,
        storage_uri="memory://",
    )
    return app


def main(argv: Optional[Sequence[str]] = None) -> None:
    config = load_config(argv)
    configure_logging(config.log_level, config.log_file)
    app = create_app(config)
    lifecycle_logger.info("Server listening on port %d", config.port)
    app.run(host=config.host, port=config.port, threaded=True, debug=False)


if __name__ == "__main__":
    main()
