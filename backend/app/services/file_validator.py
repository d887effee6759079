"""Stateless checks on a candidate upload batch (size, type, name)."""
import re
from dataclasses import dataclass, field
from typing import Iterable, Protocol

from app.config import settings

ALLOWED_TYPES = frozenset({
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "video/mp4",
    "video/webm",
    "video/quicktime",
    "audio/mp3",
    "audio/mpeg",
    "audio/wav",
    "audio/ogg",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "text/plain",
    "text/csv",
    "application/zip",
    "application/x-rar-compressed",
})

MAX_NAME_LENGTH = 255

DANGEROUS_NAME_PATTERN = re.compile(r"\.(exe|bat|cmd|scr)$", re.IGNORECASE)


class Candidate(Protocol):
    name: str
    content_type: str

    @property
    def size(self) -> int: ...


@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)


def _format_mib(num_bytes: int) -> str:
    return f"{num_bytes // (1024 * 1024)}MB"


def validate_file(
    name: str,
    content_type: str,
    size: int,
    max_file_size: int | None = None,
) -> ValidationResult:
    """Validate a single file's size, declared type and name."""
    max_file_size = max_file_size or settings.MAX_FILE_SIZE
    errors = []

    if size > max_file_size:
        errors.append(f"File size exceeds {_format_mib(max_file_size)} limit")

    if content_type not in ALLOWED_TYPES:
        errors.append(f"File type {content_type} is not allowed")

    if len(name) > MAX_NAME_LENGTH:
        errors.append(f"File name is too long (max {MAX_NAME_LENGTH} characters)")

    if DANGEROUS_NAME_PATTERN.search(name):
        errors.append("File type is not allowed for security reasons")

    return ValidationResult(is_valid=not errors, errors=errors)


def validate_batch(
    candidates: Iterable[Candidate],
    max_file_size: int | None = None,
    max_batch_size: int | None = None,
) -> ValidationResult:
    """Validate a whole batch.

    The batch ceiling is checked independently of the per-file rules; both
    kinds of failure are reported together. The batch may proceed only when
    ``errors`` is empty.
    """
    candidates = list(candidates)
    max_batch_size = max_batch_size or settings.MAX_BATCH_SIZE
    all_errors = []

    total_size = sum(c.size for c in candidates)
    if total_size > max_batch_size:
        all_errors.append(f"Total batch size exceeds {_format_mib(max_batch_size)} limit")

    for index, candidate in enumerate(candidates, start=1):
        result = validate_file(candidate.name, candidate.content_type, candidate.size, max_file_size)
        if not result.is_valid:
            all_errors.append(f"File {index} ({candidate.name}): {', '.join(result.errors)}")

    return ValidationResult(is_valid=not all_errors, errors=all_errors)
