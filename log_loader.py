import gzip
import logging
import os
import zlib
from dataclasses import dataclass
from typing import Optional, Tuple

from log_parser import LogFileError, ParserConfig, parse_log_text
from log_records import Dataset

# --- Configuration & Constants ---
DEFAULT_MAX_FILE_SIZE: int = 10 * 1024 * 1024  # 10MB
DEFAULT_ALLOWED_FILE_TYPES: Tuple[str, ...] = ('.log', '.txt', '.gz')
GZIP_MAGIC: bytes = b'\x1f\x8b'


@dataclass(frozen=True)
class UploadPolicy:
    """Size and extension limits checked before a file is decoded or parsed."""
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    allowed_file_types: Tuple[str, ...] = DEFAULT_ALLOWED_FILE_TYPES


def file_extension(filename: str) -> str:
    """Lower-cased final extension including the dot ('.gz' for 'server.log.gz')."""
    return os.path.splitext(filename.lower())[1]


def _is_gzip(filename: str, data: bytes) -> bool:
    return file_extension(filename) == '.gz' or data[:2] == GZIP_MAGIC


def validate_upload(filename: str, size: int, policy: Optional[UploadPolicy] = None):
    """
    Checks an upload against the size and file-type policy.

    Raises:
        LogFileError: the file is empty, too large or of a disallowed type.
    """
    policy = policy or UploadPolicy()
    if size <= 0:
        raise LogFileError(f"{filename} is empty")
    if size > policy.max_file_size:
        logging.warning(f"File size exceeded for {filename}: {size} bytes")
        raise LogFileError(f"File too large. Maximum size is {policy.max_file_size / 1024 / 1024:g}MB")
    extension = file_extension(filename)
    if extension not in policy.allowed_file_types:
        logging.warning(f"Invalid file type for {filename}: {extension or '(none)'}")
        raise LogFileError(f"Invalid file type. Allowed types: {', '.join(policy.allowed_file_types)}")


def decode_log_bytes(filename: str, data: bytes) -> str:
    """
    Returns the UTF-8 text of a plain or gzip-compressed log file.

    Raises:
        LogFileError: the archive is corrupt or the content is not UTF-8 text.
    """
    if _is_gzip(filename, data):
        try:
            data = gzip.decompress(data)
        except (OSError, EOFError, zlib.error) as e:
            logging.error(f"Could not decompress {filename}: {e}")
            raise LogFileError(f"{filename} is not a valid gzip file: {e}") from e
    try:
        text = data.decode('utf-8')
    except UnicodeDecodeError as e:
        logging.error(f"UnicodeDecodeError processing file {filename}. Ensure UTF-8 encoding.")
        raise LogFileError(f"Could not decode {filename}. Please ensure it's UTF-8 encoded.") from e
    if '\x00' in text:
        raise LogFileError(f"{filename} does not look like a text file")
    if not text.strip():
        raise LogFileError(f"{filename} contains no log lines")
    return text


def load_log_file(filename: str, data: bytes, policy: Optional[UploadPolicy] = None,
                  parser_config: Optional[ParserConfig] = None) -> Dataset:
    """
    Validates, decodes and parses one uploaded log file.

    Raises:
        LogFileError: any file-level failure; no partial dataset is returned.
    """
    logging.info(f"Processing uploaded file: {filename} ({len(data)} bytes)")
    validate_upload(filename, len(data), policy)
    text = decode_log_bytes(filename, data)
    return parse_log_text(text, parser_config)
