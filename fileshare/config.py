import argparse
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence, Union

DEFAULT_DIRECTORY = "./"
DEFAULT_PASSWORD = "password"
DEFAULT_PORT = 3000
DEFAULT_HOST = "0.0.0.0"
DEFAULT_LOG_LEVEL = "INFO"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _resolve_directory(value: Union[str, Path]) -> Path:
    return Path(value).expanduser().absolute()


@dataclass(frozen=True)
class ShareConfig:
    """Immutable runtime settings shared by every request handler."""

    directory: Path
    password: str = DEFAULT_PASSWORD
    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST
    download_from_cwd: bool = False
    rate_limit: Optional[str] = None
    log_level: str = DEFAULT_LOG_LEVEL
    log_file: Optional[Path] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "directory", _resolve_directory(self.directory))

    @property
    def download_root(self) -> Path:
        """Directory that download names are resolved against."""

        if self.download_from_cwd:
            return Path.cwd()
        return self.directory


def _safe_int_env(environ: Mapping[str, str], key: str, default: int) -> int:
    """Safely parse integer environment variable with error handling."""

    raw = environ.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        logging.getLogger("fileshare.config").warning(
            "Invalid value for %s: %s. Using default: %d", key, raw, default
        )
        return default


def _bool_env(environ: Mapping[str, str], key: str) -> bool:
    return environ.get(key, "").strip().lower() in _TRUE_VALUES


def _port(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {value!r}")
    if not 0 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range: {port}")
    return port


def build_parser(environ: Optional[Mapping[str, str]] = None) -> argparse.ArgumentParser:
    env = os.environ if environ is None else environ
    parser = argparse.ArgumentParser(
        prog="fileshare",
        description="Share files over HTTP behind a single shared password.",
    )
    parser.add_argument(
        "-d",
        "--dir",
        dest="directory",
        default=env.get("FILESHARE_DIR") or DEFAULT_DIRECTORY,
        help="The directory to which uploaded files will be saved",
    )
    parser.add_argument(
        "-p",
        "--password",
        default=env.get("FILESHARE_PASSWORD") or DEFAULT_PASSWORD,
        help="The password required to upload and download files",
    )
    parser.add_argument(
        "-P",
        "--port",
        type=_port,
        default=_safe_int_env(env, "FILESHARE_PORT", DEFAULT_PORT),
        help="The port on which the server will listen",
    )
    parser.add_argument(
        "--host",
        default=env.get("FILESHARE_HOST") or DEFAULT_HOST,
        help="The interface on which the server will listen",
    )
    parser.add_argument(
        "--download-from-cwd",
        action="store_true",
        default=_bool_env(env, "FILESHARE_DOWNLOAD_FROM_CWD"),
        help="Resolve download names against the working directory instead of --dir",
    )
    parser.add_argument(
        "--rate-limit",
        default=env.get("FILESHARE_RATE_LIMIT") or None,
        help='Per-client request limit such as "60 per minute" (disabled by default)',
    )
    parser.add_argument(
        "--log-level",
        default=(env.get("LOG_LEVEL") or DEFAULT_LOG_LEVEL).upper(),
        type=str.upper,
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "--log-file",
        default=env.get("FILESHARE_LOG_FILE") or None,
        help="Also write logs to this rotating log file",
    )
    return parser


def load_config(
    argv: Optional[Sequence[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ShareConfig:
    """Build a :class:`ShareConfig` from command-line arguments and environment."""

    args = build_parser(environ).parse_args(argv)
    return ShareConfig(
        directory=Path(args.directory or DEFAULT_DIRECTORY),
        password=args.password or DEFAULT_PASSWORD,
        port=args.port or DEFAULT_PORT,
        host=args.host,
        download_from_cwd=args.download_from_cwd,
        rate_limit=args.rate_limit,
        log_level=args.log_level,
        log_file=Path(args.log_file).expanduser() if args.log_file else None,
    )
