"""Durable identifier mapping and target id generation.

The mapping store is a flat, human-editable ``key=value`` file such as::

    # Identifier (isbn:..., issn:..., ppn:...) to MyCoRe ID mapping
    ppn:1234567890=artus_mods_00000001
    isbn:9783161484100=artus_mods_00000001

It is loaded once, mutated in memory, and written back by :meth:`IdMapper.persist`
only if anything changed.
"""

from __future__ import annotations

import logging
import os
import re
import string
import tempfile
import threading
from collections.abc import Iterable, Iterator
from pathlib import Path

from .exceptions import ConfigurationError, FileOperationError

logger = logging.getLogger(__name__)

STORE_HEADER = "Identifier (isbn:..., issn:..., ppn:...) to MyCoRe ID Mapping"

TEMPLATE_PATTERN = re.compile(r"(.*?)([0-9]+)", re.DOTALL)

_UNESCAPES = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}


def _unescape(text: str) -> str:
    """Decode backslash escapes, including ``\\uXXXX`` as written by Java's ``Properties.store``.

    Raises:
        ValueError: If a ``\\u`` escape is not followed by four hex digits
    """
    out: list[str] = []
    chars = iter(text)
    for char in chars:
        if char != "\\":
            out.append(char)
            continue
        escaped = next(chars, "")
        if escaped == "u":
            code = "".join(next(chars, "") for _ in range(4))
            if len(code) != 4 or not all(c in string.hexdigits for c in code):
                raise ValueError(f"Malformed \\uXXXX escape: \\u{code}")
            out.append(chr(int(code, 16)))
            continue
        out.append(_UNESCAPES.get(escaped, escaped))
    # Java escapes characters outside the BMP as surrogate pairs
    return "".join(out).encode("utf-16", "surrogatepass").decode("utf-16")


def _split_entry(line: str) -> tuple[str, str] | None:
    """Split a store line into raw key and value parts.

    ``=`` separates key and value. Lines without an unescaped ``=`` fall back to
    the first unescaped ``:`` or whitespace, as in Java properties files.
    """
    equals: int | None = None
    fallback: int | None = None
    escaped = False
    for index, char in enumerate(line):
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
        elif char == "=":
            equals = index
            break
        elif fallback is None and (char == ":" or char in " \t"):
            fallback = index

    split_at = equals if equals is not None else fallback
    if split_at is None:
        return None
    return line[:split_at], line[split_at + 1 :]


def parse_store(lines: Iterable[str]) -> dict[str, str]:
    """Parse mapping store lines into a dictionary.

    Blank lines and ``#``/``!`` comments are ignored. Lines that cannot be split
    into a non-empty key and value are skipped with a warning.
    """
    entries: dict[str, str] = {}
    for line_number, raw_line in enumerate(lines, start=1):
        line = raw_line.strip()
        if not line or line.startswith(("#", "!")):
            continue

        parts = _split_entry(line)
        if parts is None:
            logger.warning(f"Skipping unparseable mapping line {line_number}: {raw_line!r}")
            continue

        try:
            key = _unescape(parts[0].strip())
            value = _unescape(parts[1].strip())
        except ValueError as e:
            logger.warning(f"Skipping mapping line {line_number}: {e}")
            continue
        if not key or not value:
            logger.warning(f"Skipping incomplete mapping line {line_number}: {raw_line!r}")
            continue

        entries[key] = value
    return entries


def _escape_key(key: str) -> str:
    return key.replace("\\", "\\\\").replace("=", "\\=")


def format_store(entries: dict[str, str]) -> str:
    """Render mapping entries in store format, sorted by key."""
    lines = [f"# {STORE_HEADER}"]
    for key in sorted(entries):
        lines.append(f"{_escape_key(key)}={entries[key]}")
    return "\n".join(lines) + "\n"


class IdGenerator:
    """Generate monotonically increasing ids from a ``prefix + digits`` template.

    The counter starts at the larger of the template's numeric value and the
    highest suffix among existing ids of the same shape, so the first id handed
    out is always one above both. Ids are never reused within or across runs
    against the same store.
    """

    def __init__(self, template: str, existing_ids: Iterable[str] = ()) -> None:
        match = TEMPLATE_PATTERN.fullmatch(template)
        if not match:
            raise ConfigurationError(
                f"Invalid id template, expected a trailing digit run like 'prefix_0000': {template!r}"
            )

        self.prefix = match.group(1)
        digits = match.group(2)
        self.digit_width = len(digits)
        self._id_pattern = re.compile(
            "^" + re.escape(self.prefix) + r"([0-9]{" + str(self.digit_width) + r"})$"
        )
        self._lock = threading.Lock()
        self.counter = max(int(digits), self._max_existing(existing_ids))

        logger.info(
            "ID generator initialized: prefix=%r width=%d next=%s",
            self.prefix,
            self.digit_width,
            self._format(self.counter + 1),
        )

    def _max_existing(self, existing_ids: Iterable[str]) -> int:
        highest = -1
        for existing in set(existing_ids):
            match = self._id_pattern.match(existing)
            if match:
                highest = max(highest, int(match.group(1)))
        return highest

    def _format(self, number: int) -> str:
        return f"{self.prefix}{number:0{self.digit_width}d}"

    def matches(self, target_id: str) -> bool:
        """Whether ``target_id`` has the shape of ids produced by this generator."""
        return bool(self._id_pattern.match(target_id))

    def next_id(self) -> str:
        """Return the next id.

        Raises:
            ConfigurationError: If the next number needs more digits than the
                template has
        """
        with self._lock:
            number = self.counter + 1
            if len(str(number)) > self.digit_width:
                raise ConfigurationError(
                    f"ID template exhausted: {self._format(number)!r} exceeds "
                    f"{self.digit_width} digits after prefix {self.prefix!r}"
                )
            self.counter = number
            return self._format(number)


class IdMapper:
    """In-memory key to target id map with a single conditional write-back."""

    def __init__(
        self,
        entries: dict[str, str],
        generator: IdGenerator,
        path: Path | None = None,
    ) -> None:
        self._entries = dict(entries)
        self.generator = generator
        self.path = path
        self.dirty = False
        self.generated_count = 0
        self.assigned_count = 0
        self._lock = threading.RLock()

    @classmethod
    def load(cls, path: Path, id_template: str) -> IdMapper:
        """Load a mapping store and set up the id generator.

        A missing store file yields an empty mapping; it is created on the first
        :meth:`persist` with changes.

        Raises:
            ConfigurationError: If ``id_template`` has no trailing digits
            FileOperationError: If an existing store cannot be read
        """
        entries: dict[str, str] = {}
        if path.exists():
            logger.debug(f"Loading ID mapper from: {path}")
            try:
                with open(path, encoding="utf-8") as f:
                    entries = parse_store(f)
            except (OSError, UnicodeDecodeError) as e:
                raise FileOperationError(f"Failed to read ID mapper {path}: {e}") from e
            logger.info(f"Loaded {len(entries)} mappings from {path}")
        else:
            logger.info(f"ID mapper file not found at {path}, will create if needed")

        generator = IdGenerator(id_template, entries.values())
        return cls(entries, generator, path)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def items(self) -> list[tuple[str, str]]:
        with self._lock:
            return list(self._entries.items())

    def lookup(self, key: str) -> str | None:
        """Return the id mapped to ``key``, if any."""
        return self._entries.get(key)

    def ensure_id(self, key: str) -> str:
        """Return the id for ``key``, generating and storing a new one on a miss."""
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None:
                logger.debug(f"Found existing mapping {key} -> {existing}")
                return existing

            new_id = self.generator.next_id()
            self._entries[key] = new_id
            self.dirty = True
            self.generated_count += 1
            logger.info(f"Generated new mapping {key} -> {new_id}")
            return new_id

    def assign(self, key: str, target_id: str) -> bool:
        """Map an additional ``key`` to an already known ``target_id``.

        Existing mappings are never overwritten.

        Returns:
            True if a new entry was added
        """
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None:
                if existing != target_id:
                    logger.warning(
                        f"Key {key} already mapped to {existing}, not remapping to {target_id}"
                    )
                return False

            self._entries[key] = target_id
            self.dirty = True
            self.assigned_count += 1
            logger.debug(f"Added mapping {key} -> {target_id}")
            return True

    def persist(self) -> bool:
        """Write the store back if anything changed.

        The whole file is rewritten through a temporary file in the same
        directory, so a failed write leaves the previous store intact.

        Returns:
            True if the store was written

        Raises:
            FileOperationError: If the store cannot be written
        """
        with self._lock:
            if not self.dirty:
                logger.debug("ID mapper unchanged, not writing")
                return False
            if self.path is None:
                raise FileOperationError("ID mapper has no store path to persist to")

            content = format_store(self._entries)
            logger.info(f"Saving {len(self._entries)} mappings to ID mapper file: {self.path}")

            tmp_name: str | None = None
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with tempfile.NamedTemporaryFile(
                    mode="w",
                    encoding="utf-8",
                    dir=self.path.parent,
                    prefix=f".{self.path.name}.",
                    suffix=".tmp",
                    delete=False,
                ) as tmp:
                    tmp_name = tmp.name
                    tmp.write(content)
                os.replace(tmp_name, self.path)
            except OSError as e:
                if tmp_name is not None:
                    Path(tmp_name).unlink(missing_ok=True)
                raise FileOperationError(f"Failed to write ID mapper {self.path}: {e}") from e

            self.dirty = False
            return True
