import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Union

logger = logging.getLogger(__name__)


# -------------------------------
# Normalization / tokenization
# -------------------------------
_QUOTES = str.maketrans({
    "‘": "'",
    "’": "'",
    "‚": "'",
    "‛": "'",
    "“": "'",
    "”": "'",
    "„": "'",
    "‟": "'",
    "–": "-",
    "—": "-",
})
_NON_ASCII_RE = re.compile(r"[^\x20-\x7e\t\n\r]")
_PUNCT_RE = re.compile(r"[^\w\s]")


def normalize(text: str) -> str:
    """
    Lowercase, fold curly quotes and dashes, drop non-ASCII and punctuation.
    Whitespace runs are left alone; tokenize() splits on them.
    """
    if not text:
        return ""
    s = text.lower().translate(_QUOTES)
    s = _NON_ASCII_RE.sub("", s)
    return _PUNCT_RE.sub("", s)


def tokenize(text: str) -> list[str]:
    """Normalized keywords of a free-text string."""
    return normalize(text).split()


def _squash(text: str) -> str:
    # Label comparison ignores spacing differences ("Casa  Amore").
    return " ".join(tokenize(text))


# -------------------------------
# Indexer
# -------------------------------
SECTION_MARKER_RE = re.compile(
    r"^\s*(?:task|cabin)\s*:\s*(?P<label>\S.*?)\s*$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Section:
    document: str
    label: str
    lines: tuple
    start: int
    end: int

    @property
    def body(self) -> tuple:
        """Lines after the marker line."""
        return self.lines[1:]

    @property
    def text(self) -> str:
        return normalize(" ".join(line.strip() for line in self.lines))


def section_label(line: str) -> Optional[str]:
    """Return the label if the line opens a new section, else None."""
    m = SECTION_MARKER_RE.match(line)
    if not m:
        return None
    return m.group("label")


def split_sections(name: str, text: str) -> list[Section]:
    """
    Cut one document into sections. Each section runs from its marker line
    (inclusive) to the next marker or the end of the document. Lines before
    the first marker are not part of any section.
    """
    lines = (text or "").splitlines()
    sections = []
    label = None
    start = 0

    def close(end):
        if label is not None and end > start:
            sections.append(Section(
                document=name,
                label=label,
                lines=tuple(lines[start:end]),
                start=start,
                end=end,
            ))

    for i, line in enumerate(lines):
        found = section_label(line)
        if found is None:
            continue
        close(i)
        label = found
        start = i

    close(len(lines))
    return sections


def index(documents: Iterable) -> Mapping[str, tuple]:
    """
    Build a fresh index {document name: (Section, ...)} from (name, text)
    pairs. A repeated name replaces the earlier text but keeps its position.
    """
    built = {}
    for name, text in documents:
        built[name] = tuple(split_sections(name, text))
    logger.debug(
        "Indexed %d SOP documents into %d sections",
        len(built),
        sum(len(s) for s in built.values()),
    )
    return MappingProxyType(built)


EMPTY_INDEX = MappingProxyType({})


# -------------------------------
# Fields and presentation labels
# -------------------------------
_TRAILING_DIGITS_RE = re.compile(r"\d+$")

FRIENDLY_LABELS = {
    "wifi network name": "WiFi Network",
    "wifi network": "WiFi Network",
    "wifi name": "WiFi Network",
    "wifi ssid": "WiFi Network",
    "ssid": "WiFi Network",
    "wifi password": "Password",
    "wifi pass": "Password",
    "network password": "Password",
    "door code": "Door Code",
    "lock code": "Door Code",
}

_PASSWORD_HINTS = ("wifi", "wi fi", "network", "internet")


def derive_label(raw_label: str) -> str:
    """wifi_password2 -> 'wifi password'"""
    s = raw_label.replace("_", " ").replace("-", " ").strip()
    s = _TRAILING_DIGITS_RE.sub("", s)
    return " ".join(s.split())


def display_label(raw_label: str) -> str:
    derived = derive_label(raw_label)
    key = derived.lower()
    if key in FRIENDLY_LABELS:
        return FRIENDLY_LABELS[key]
    return derived.title()


def is_network_password(raw_label: str, context: str = "") -> bool:
    """
    True for wifi_password / network password style labels. A bare `password`
    only counts when the section itself talks about wifi or the network.
    """
    key = derive_label(raw_label).lower()
    if "password" not in key:
        return False
    if any(hint in key for hint in _PASSWORD_HINTS):
        return True
    return key == "password" and any(hint in context for hint in _PASSWORD_HINTS)


@dataclass(frozen=True)
class Field:
    raw_label: str
    raw_value: str

    @classmethod
    def parse(cls, line: str) -> Optional["Field"]:
        if ":" not in line:
            return None
        label, value = line.split(":", 1)
        return cls(raw_label=label, raw_value=value)

    @property
    def label(self) -> str:
        return display_label(self.raw_label)

    @property
    def value(self) -> str:
        return self.raw_value.strip()

    def __str__(self):
        return f"{self.label}: {self.value}"


@dataclass(frozen=True)
class Note:
    """A section line without a colon, shown as-is."""
    text: str

    def __str__(self):
        return self.text


# -------------------------------
# Resolver
# -------------------------------
@dataclass(frozen=True)
class Match:
    document: str
    section: str
    entries: tuple = ()
    suggested_reply: Optional[str] = None

    @property
    def fields(self) -> list:
        return [e for e in self.entries if isinstance(e, Field)]

    @property
    def notes(self) -> list:
        return [e for e in self.entries if isinstance(e, Note)]


class NoMatch:
    """Nothing in the SOPs covers this cabin/issue pair."""

    def __bool__(self):
        return False

    def __repr__(self):
        return "NoMatch()"


NO_MATCH = NoMatch()

Result = Union[Match, NoMatch]


def cabin_matches(section: Section, cabin: str) -> bool:
    """Substring containment on normalized text; an empty cabin matches nothing."""
    wanted = _squash(cabin)
    if not wanted:
        return False
    return wanted in _squash(section.label)


def extract(section: Section) -> Match:
    entries = []
    suggested = None
    context = section.text.replace("_", " ")
    for line in section.body:
        stripped = line.strip()
        if not stripped:
            continue
        parsed = Field.parse(stripped)
        if parsed is None:
            entries.append(Note(stripped))
            continue
        entries.append(parsed)
        if suggested is None and parsed.value and is_network_password(parsed.raw_label, context):
            suggested = parsed.value
    return Match(
        document=section.document,
        section=section.label,
        entries=tuple(entries),
        suggested_reply=suggested,
    )


def resolve(sop_index: Mapping[str, tuple], cabin: str, issue: str) -> Result:
    """
    First section (document order, then section order) whose label contains
    the cabin and whose text contains at least one issue keyword.
    """
    keywords = set(tokenize(issue))
    if not keywords or not sop_index:
        return NO_MATCH

    for sections in sop_index.values():
        for section in sections:
            if not cabin_matches(section, cabin):
                continue
            haystack = section.text
            if any(k in haystack for k in keywords):
                return extract(section)
    return NO_MATCH


# -------------------------------
# Published index
# -------------------------------
@dataclass
class SopLibrary:
    """
    Holds the current index. sync() builds the replacement completely before
    publishing it with a single attribute assignment, so readers that grabbed
    `current` keep a consistent snapshot.
    """
    current: Mapping[str, tuple] = field(default_factory=lambda: EMPTY_INDEX)

    def sync(self, documents: Iterable) -> Mapping[str, tuple]:
        fresh = index(documents)
        self.current = fresh
        logger.info(
            "SOP index replaced: %d documents, %d sections",
            len(fresh),
            self.section_count(fresh),
        )
        return fresh

    def resolve(self, cabin: str, issue: str) -> Result:
        return resolve(self.current, cabin, issue)

    @staticmethod
    def section_count(sop_index: Mapping[str, tuple]) -> int:
        return sum(len(s) for s in sop_index.values())
