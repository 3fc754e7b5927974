"""
Hierarchical resource paths and their encodings.

A Path is an ordered sequence of segments, "/a/b/c". Each segment is
either named (optionally with an explicit kind, "kind(name)") or serial,
an allocated positive integer rendered as "__<id>__". The empty sequence
is ROOT.

A path has two derived encodings:
- Key chain: one Key per segment, each parented by the previous one and
  the first by ROOT_KEY. This is the identity in the keyed store.
- Doc-id: a string of letters, digits, '_' and '~' usable as a search
  index name, field value and token.

Invariants:
    - str(path) always starts with "/" and Path.from_string(str(p)) == p
    - Segments never contain "/" or "#" and never start or end with
      whitespace; serial ids are written without leading zeros
    - get_parent() of a top-level path and of ROOT returns the ROOT singleton
    - from_key(p.to_key()) == p and from_doc_id(p.to_doc_id()) == p

How to change safely:
    - The doc-id substitution table is persisted in every index; never
      reorder it or change its replacements
    - "_" must stay the first substitution so the others' underscores
      are not re-escaped
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass
from urllib.parse import quote_plus, unquote_plus

from ..backends.base import Key
from ..errors import IncompleteKeyError, MalformedPathError

PATH_KIND = "path"
ROOT_NAME = "ROOT"
ROOT_KEY = Key(PATH_KIND, ROOT_NAME)

# Kinds used for internal records stored beside resources.
ACL_KIND = "acl"
SCHEMA_KIND = "schema"
RESERVED_KINDS = frozenset({ACL_KIND, SCHEMA_KIND})

SEP = "/"

_KIND_PART = re.compile(r"^(\w+)\(([^/#()]+)\)$")
_NAME_PART = re.compile(r"^[^/#()]+$")
_SERIAL_NAME = re.compile(r"^__(\d+)__$")

# Characters not allowed in index names, in order of substitution.
REPL_PAIRS = (
    ("_", "_U"),
    ("%", "_P"),
    (".", "_D"),
    ("-", "_M"),
    ("*", "_S"),
    ("+", "_L"),
)
_UNREPL = {repl: char for char, repl in REPL_PAIRS}
_UNREPL_PATTERN = re.compile(r"_[A-Z]")


@dataclass(frozen=True)
class Segment:
    """One element of a path: a name or a serial id, with a kind."""

    kind: str = PATH_KIND
    name: str | None = None
    id: int | None = None

    @property
    def name_or_id(self) -> str:
        if self.name is None:
            return f"__{self.id}__"
        return self.name

    def __str__(self) -> str:
        if self.kind == PATH_KIND:
            return self.name_or_id
        return f"{self.kind}({self.name_or_id})"

    @classmethod
    def parse(cls, part: str) -> Segment:
        m = _KIND_PART.match(part)
        if m is not None:
            kind, name = m.group(1), m.group(2)
        elif _NAME_PART.match(part):
            kind, name = PATH_KIND, part
        else:
            raise MalformedPathError(f"Path part({part}) must be name or kind(name)", part)

        if kind in RESERVED_KINDS:
            raise MalformedPathError(f"Path part({part}) uses reserved kind({kind})", part)
        if name != name.strip():
            raise MalformedPathError(f"Path part({part}) may not start or end with whitespace", part)

        serial = _SERIAL_NAME.match(name)
        if serial is None:
            return cls(kind, name=name)
        digits = serial.group(1)
        if digits.startswith("0"):
            raise MalformedPathError(f"Path part({part}) serial id must be positive, unpadded", part)
        return cls(kind, id=int(digits))


@dataclass(frozen=True)
class Path:
    """Immutable hierarchical path.

    Example:
        >>> p = Path.from_string("/foo/bar/")
        >>> str(p), p.to_doc_id()
        ('/foo/bar', 'ROOTfoo_P2Fbar')
        >>> p.get_parent()
        Path('/foo')
    """

    segments: tuple[Segment, ...] = ()

    def __str__(self) -> str:
        if not self.segments:
            return SEP
        return "".join(SEP + str(s) for s in self.segments)

    def __repr__(self) -> str:
        return f"Path({str(self)!r})"

    def __len__(self) -> int:
        return len(self.segments)

    @property
    def is_root(self) -> bool:
        return not self.segments

    @property
    def filename(self) -> str:
        """String form of the last segment, ROOT for the root path."""
        if not self.segments:
            return ROOT_NAME
        return str(self.segments[-1])

    @property
    def is_serial(self) -> bool:
        return bool(self.segments) and self.segments[-1].name is None

    def child(self, name: str | None = None, kind: str = PATH_KIND, id: int | None = None) -> Path:
        return Path(self.segments + (Segment(kind, name, id),))

    def get_parent(self) -> Path:
        if len(self.segments) <= 1:
            return ROOT
        return Path(self.segments[:-1])

    def is_parent_of(self, other: Path) -> bool:
        """Strict ancestor test."""
        n = len(self.segments)
        return n < len(other.segments) and other.segments[:n] == self.segments

    def ancestors(self) -> Iterator[Path]:
        """This path and each ancestor, closest first, ending with ROOT."""
        cur = self
        while True:
            yield cur
            if cur.is_root:
                return
            cur = cur.get_parent()

    @classmethod
    def from_string(cls, path_str: str) -> Path:
        if path_str is None:
            raise MalformedPathError("Path string may not be None")
        if "#" in path_str:
            raise MalformedPathError("Path may not contain #", path_str)
        s = path_str.strip()
        if s.startswith(SEP):
            s = s[1:]
        if s.endswith(SEP):
            s = s[:-1]
        if s == "":
            return ROOT
        return cls(tuple(Segment.parse(part) for part in s.split(SEP)))

    def to_key(self) -> Key:
        key = ROOT_KEY
        for s in self.segments:
            key = Key(s.kind, s.name, s.id, key)
        return key

    @classmethod
    def from_key(cls, key: Key) -> Path:
        if key == ROOT_KEY:
            return ROOT
        segments: list[Segment] = []
        cur: Key | None = key
        while cur is not None and cur.parent is not None:
            if not cur.is_complete:
                raise IncompleteKeyError(f"Key is incomplete, cannot create path: {key}")
            segments.append(Segment(cur.kind, cur.name, cur.id))
            cur = cur.parent
        if cur is None or not cur.is_complete:
            raise IncompleteKeyError(f"Key is incomplete, cannot create path: {key}")
        if not segments:
            return ROOT
        return cls(tuple(reversed(segments)))

    def to_doc_id(self) -> str:
        doc_id = str(self)
        if doc_id.startswith(SEP):
            doc_id = ROOT_NAME + doc_id[len(SEP):]
        doc_id = quote_plus(doc_id, safe="*")
        for char, repl in REPL_PAIRS:
            doc_id = doc_id.replace(char, repl)
        return doc_id

    @classmethod
    def from_doc_id(cls, doc_id: str) -> Path:
        def unrepl(m: re.Match) -> str:
            try:
                return _UNREPL[m.group(0)]
            except KeyError:
                raise MalformedPathError(f"Invalid escape in doc id: {m.group(0)}", doc_id)

        decoded = unquote_plus(_UNREPL_PATTERN.sub(unrepl, doc_id))
        if decoded.startswith(ROOT_NAME):
            decoded = SEP + decoded[len(ROOT_NAME):]
        return cls.from_string(decoded)


ROOT = Path()


def path_tokens(path: Path) -> str:
    """Whitespace-joined doc-ids of path and all its ancestors.

    Example:
        >>> path_tokens(Path.from_string("/a/b"))
        'ROOTa_P2Fb ROOTa ROOT'
    """
    return " ".join(p.to_doc_id() for p in path.ancestors())
