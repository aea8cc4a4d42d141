"""Credential redaction for route files

Route handlers sometimes carry inline credentials. Before such a file enters a
backup its secret values are blanked while the surrounding code is left as is:

    GITHUB_TOKEN = "ghp_abc123"   ->   GITHUB_TOKEN=""

Only a redacted copy is written, in a scratch area outside the project tree.
The file on disk is never modified.
"""

import logging
import re
from pathlib import Path

from .models import FileOutcome, StagedFile

logger = logging.getLogger("CredentialRedactor")

CREDENTIAL_KEYS = ("GITHUB_TOKEN", "API_KEY", "SECRET", "PASSWORD", "TOKEN")

# KEY, optional blanks, a single '=' (not '=='), optional blanks, then a
# quoted or bare value on the same line.
_VALUE = r"""(?:"[^"\n]*"|'[^'\n]*'|[^'"\s]+)"""
_PATTERNS = [(key, re.compile(rf"{key}[ \t]*=(?!=)[ \t]*{_VALUE}")) for key in CREDENTIAL_KEYS]


def redact_credentials(content: str) -> str:
    """Blank every credential-style assignment, leaving all other text untouched"""
    for key, pattern in _PATTERNS:
        content = pattern.sub(f'{key}=""', content)
    return content


class CredentialRedactor:
    """Writes redacted copies of route files into a scratch directory"""

    def __init__(self, scratch_dir: Path):
        self.scratch_dir = Path(scratch_dir)

    def redact_file(self, source: Path, relative_path: Path) -> FileOutcome:
        """Redact one file into ``scratch_dir/relative_path``

        A file that cannot be read fails; it is never passed through unredacted.
        """
        # newline="" keeps CRLF and other line endings byte-for-byte
        try:
            with open(source, encoding="utf-8", newline="") as f:
                content = f.read()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read route file {relative_path} for redaction, leaving it out: {e}")
            return FileOutcome.failed(Path(relative_path), f"unreadable for redaction: {e}")

        target = self.scratch_dir / relative_path
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "w", encoding="utf-8", newline="") as f:
                f.write(redact_credentials(content))
        except OSError as e:
            logger.warning(f"Could not write redacted copy of {relative_path}: {e}")
            return FileOutcome.failed(Path(relative_path), f"redacted copy not written: {e}")

        return FileOutcome.ok(Path(relative_path), output=target)

    def staged(self, outcome: FileOutcome) -> StagedFile:
        """Staging entry for a successfully redacted file"""
        if not outcome.success or outcome.output is None:
            raise ValueError(f"{outcome.path} has no redacted copy to stage")
        return StagedFile(source=outcome.output, relative_path=outcome.path)
