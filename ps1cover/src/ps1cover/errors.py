"""Exception types shared by the cover tools."""

from __future__ import annotations


class CoverError(Exception):
    """Base class for every error raised by ps1cover."""


class DecodeError(CoverError):
    """Raised when a source image or PNG stream cannot be decoded."""


class SizeContractViolation(CoverError):
    """Raised when container bytes are not one of the valid lengths."""


class ExternalToolFailure(CoverError):
    """Raised when an external quantizer exits abnormally or produces nothing."""

    def __init__(
        self,
        message: str,
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        details = [message]
        if stderr.strip():
            details.append(stderr.strip())
        if stdout.strip():
            details.append(stdout.strip())
        super().__init__("\n".join(details))
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
