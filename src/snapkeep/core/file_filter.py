"""Pattern classification of a project tree into backup buckets"""

import logging
import os
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

from .errors import PatternError

logger = logging.getLogger("FileFilter")


def translate_glob(pattern: str) -> str:
    """Convert a glob pattern into a regular expression for relative POSIX paths

    Supported syntax: ``*`` (within a segment), ``**`` (any depth, as a whole
    segment), ``?``, ``[...]`` / ``[!...]`` and ``{a,b}`` alternation. A pattern
    without a slash matches the file name at any depth; a trailing slash
    matches everything below a directory of that name.

    Raises:
        PatternError: On empty patterns or unbalanced brackets/braces
    """
    original = pattern
    if not pattern or not pattern.strip():
        raise PatternError(original, "pattern is empty")

    if pattern.startswith("./"):
        pattern = pattern[2:]
    if pattern.endswith("/"):
        pattern = pattern.rstrip("/") + "/**"
    if pattern.startswith("/"):
        pattern = pattern.lstrip("/")
    elif "/" not in pattern:
        pattern = "**/" + pattern
    if not pattern:
        raise PatternError(original, "pattern is empty")

    out: list[str] = []
    depth = 0
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                j = i
                while j < n and pattern[j] == "*":
                    j += 1
                whole_segment = (i == 0 or pattern[i - 1] == "/") and (j == n or pattern[j] == "/")
                if whole_segment and j < n:
                    out.append("(?:.*/)?")
                    i = j + 1
                elif whole_segment:
                    out.append(".*")
                    i = j
                else:
                    out.append("[^/]*")
                    i = j
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            j = i + 1
            if j < n and pattern[j] in "!^":
                j += 1
            if j < n and pattern[j] == "]":
                j += 1
            while j < n and pattern[j] != "]":
                j += 1
            if j >= n:
                raise PatternError(original, "unterminated character class '['")
            body = pattern[i + 1 : j].replace("\\", "\\\\")
            if body.startswith("!"):
                body = "^" + body[1:]
            out.append(f"[{body}]")
            i = j + 1
            continue
        elif c == "{":
            depth += 1
            out.append("(?:")
        elif c == "," and depth:
            out.append("|")
        elif c == "}":
            if not depth:
                raise PatternError(original, "unmatched '}'")
            depth -= 1
            out.append(")")
        else:
            out.append(re.escape(c))
        i += 1

    if depth:
        raise PatternError(original, "unterminated brace '{'")
    return "(?s:" + "".join(out) + r")\Z"


def compile_patterns(patterns: Iterable[str]) -> list[re.Pattern]:
    """Compile every pattern up front so a bad one fails before any traversal"""
    compiled = []
    for pattern in patterns:
        if not isinstance(pattern, str):
            raise PatternError(str(pattern), "pattern must be a string")
        try:
            compiled.append(re.compile(translate_glob(pattern)))
        except re.error as e:
            raise PatternError(pattern, str(e)) from e
    return compiled


def _matches(regexes: list[re.Pattern], relative_path: str) -> bool:
    return any(regex.match(relative_path) for regex in regexes)


@dataclass
class FileBuckets:
    """Classification of a tree; all paths absolute"""

    root: Path
    included: set[Path] = field(default_factory=set)
    excluded: set[Path] = field(default_factory=set)
    encrypt_marked: set[Path] = field(default_factory=set)

    @property
    def encrypted(self) -> set[Path]:
        return (self.included & self.encrypt_marked) - self.excluded

    @property
    def regular(self) -> set[Path]:
        return self.included - self.encrypt_marked - self.excluded

    def relative(self, path: Path) -> Path:
        return path.relative_to(self.root)


class FileFilter:
    """Matches a tree against include/exclude/encrypt pattern sets"""

    def __init__(
        self,
        include: list[str],
        exclude: list[str] | None = None,
        encrypt: list[str] | None = None,
        route_patterns: list[str] | None = None,
    ):
        self.include = compile_patterns(include)
        self.exclude = compile_patterns(exclude or [])
        self.encrypt = compile_patterns(encrypt or [])
        self.routes = compile_patterns(route_patterns or [])

    def iter_files(self, root: Path, skip_dirs: Iterable[Path] = ()) -> Iterator[str]:
        """Yield relative POSIX paths of every file under ``root``

        Directories listed in ``skip_dirs`` (backup storage, staging, tool
        configuration) are never entered.
        """
        root = Path(root).resolve()
        skipped = {Path(p).resolve() for p in skip_dirs}

        for dirpath, dirnames, filenames in os.walk(root):
            current = Path(dirpath)
            dirnames[:] = sorted(d for d in dirnames if (current / d).resolve() not in skipped)
            for filename in sorted(filenames):
                yield (current / filename).relative_to(root).as_posix()

    def classify(self, root: Path, skip_dirs: Iterable[Path] = ()) -> FileBuckets:
        """Produce the included/excluded/encrypt-marked sets for ``root``"""
        root = Path(root).resolve()
        buckets = FileBuckets(root=root)

        for relative_path in self.iter_files(root, skip_dirs):
            absolute = root / relative_path
            if _matches(self.include, relative_path):
                buckets.included.add(absolute)
            if _matches(self.exclude, relative_path):
                buckets.excluded.add(absolute)
            if _matches(self.encrypt, relative_path):
                buckets.encrypt_marked.add(absolute)

        logger.info(
            f"Classified {root}: {len(buckets.regular)} regular, {len(buckets.encrypted)} encrypted, "
            f"{len(buckets.excluded)} excluded"
        )
        return buckets

    def is_route_file(self, relative_path: Path | str) -> bool:
        """Whether a file belongs to the credential-redaction route category"""
        return _matches(self.routes, Path(relative_path).as_posix())
