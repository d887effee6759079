"""Unit tests for upload batch validation"""

from dataclasses import dataclass

from app.config import MiB
from app.services.file_validator import validate_batch, validate_file


@dataclass
class FakeCandidate:
    name: str
    content_type: str
    size: int


class TestValidateFile:
    """Per-file size, type and name rules"""

    def test_accepts_allowed_file(self):
        result = validate_file("report.pdf", "application/pdf", 2 * MiB)
        assert result.is_valid
        assert result.errors == []

    def test_rejects_oversized_file(self):
        result = validate_file("movie.mp4", "video/mp4", 101 * MiB)
        assert not result.is_valid
        assert "File size exceeds 100MB limit" in result.errors

    def test_file_exactly_at_limit_is_accepted(self):
        assert validate_file("movie.mp4", "video/mp4", 100 * MiB).is_valid

    def test_rejects_disallowed_type(self):
        result = validate_file("page.html", "text/html", 10)
        assert result.errors == ["File type text/html is not allowed"]

    def test_rejects_long_name(self):
        result = validate_file("a" * 252 + ".txt", "text/plain", 10)
        assert "File name is too long (max 255 characters)" in result.errors

    def test_rejects_dangerous_extension_case_insensitively(self):
        result = validate_file("Setup.EXE", "text/plain", 10)
        assert result.errors == ["File type is not allowed for security reasons"]

    def test_reports_every_problem(self):
        result = validate_file("run.bat", "application/x-msdownload", 200 * MiB)
        assert len(result.errors) == 3


class TestValidateBatch:
    """Batch ceiling plus itemized per-file reasons"""

    def test_batch_over_ceiling_fails_even_if_files_are_valid(self):
        files = [FakeCandidate(f"clip{i}.mp4", "video/mp4", 100 * MiB) for i in range(6)]
        result = validate_batch(files)
        assert not result.is_valid
        assert result.errors == ["Total batch size exceeds 500MB limit"]

    def test_batch_at_ceiling_passes(self):
        files = [FakeCandidate(f"clip{i}.mp4", "video/mp4", 100 * MiB) for i in range(5)]
        assert validate_batch(files).is_valid

    def test_file_errors_are_numbered_from_one(self):
        files = [
            FakeCandidate("ok.txt", "text/plain", 5),
            FakeCandidate("bad.exe", "text/plain", 5),
        ]
        result = validate_batch(files)
        assert result.errors == ["File 2 (bad.exe): File type is not allowed for security reasons"]

    def test_batch_and_file_errors_are_reported_together(self):
        files = [FakeCandidate(f"clip{i}.mp4", "video/mp4", 100 * MiB) for i in range(5)]
        files.append(FakeCandidate("x.html", "text/html", 1 * MiB))
        result = validate_batch(files)
        assert result.errors[0] == "Total batch size exceeds 500MB limit"
        assert result.errors[1].startswith("File 6 (x.html):")

    def test_custom_limits(self):
        files = [FakeCandidate("a.txt", "text/plain", 60), FakeCandidate("b.txt", "text/plain", 60)]
        result = validate_batch(files, max_file_size=100, max_batch_size=100)
        assert not result.is_valid
