"""Boundary between match results and the host library.

The engine never touches the host's object model. Adapters implement
:class:`ResultMaterializer` and must be idempotent: applying the same
RecordResult twice must not create duplicate tags, notes or links.

Tag names are stored on library items and are always English, regardless of
the user's locale.
"""

from __future__ import annotations

import html
import re
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field

from replication_checker.models import CandidateRelation, RecordResult, RelationKind
from replication_checker.suppression import doi_identity, relation_identity, url_identity

TAG_HAS_REPLICATION = "Has Replication"
TAG_IS_REPLICATION = "Is Replication"
TAG_HAS_REPRODUCTION = "Has Reproduction"
TAG_IS_REPRODUCTION = "Is Reproduction"
TAG_IS_ORIGINAL = "Is Original"
TAG_ADDED_BY_CHECKER = "Added by Replication Checker"

KIND_TAGS = {
    RelationKind.REPLICATION: TAG_HAS_REPLICATION,
    RelationKind.ORIGINAL: TAG_IS_REPLICATION,
    RelationKind.REPRODUCTION: TAG_HAS_REPRODUCTION,
}

# Tag given to an item the checker adds for a related study
RELATED_ITEM_TAGS = {
    RelationKind.REPLICATION: TAG_IS_REPLICATION,
    RelationKind.ORIGINAL: TAG_IS_ORIGINAL,
    RelationKind.REPRODUCTION: TAG_IS_REPRODUCTION,
}

REPLICATION_OUTCOME_TAGS = {
    "successful": "Replication: Successful",
    "failure": "Replication: Failure",
    "failed": "Replication: Failure",
    "mixed": "Replication: Mixed",
}

REPRODUCTION_OUTCOME_TAGS = {
    "computationally successful, robust": "Reproduction: Computationally Successful, Robust",
    "computationally successful, robustness challenges": (
        "Reproduction: Computationally Successful, Robustness Challenges"
    ),
    "computationally successful, robustness not checked": (
        "Reproduction: Computationally Successful, Robustness Not Checked"
    ),
    "computational issues, robust": "Reproduction: Computational Issues, Robust",
    "computational issues, robustness challenges": "Reproduction: Computational Issues, Robustness Challenges",
    "computational issues, robustness not checked": "Reproduction: Computational Issues, Robustness Not Checked",
}

NOTE_HEADINGS = {
    RelationKind.REPLICATION: "Replications Found",
    RelationKind.ORIGINAL: "Original Studies Found",
    RelationKind.REPRODUCTION: "Reproductions Found",
}

NOTE_INTROS = {
    RelationKind.REPLICATION: "This study has been replicated:",
    RelationKind.ORIGINAL: "This study is a replication of:",
    RelationKind.REPRODUCTION: "This study has been reproduced:",
}

NOTE_FOOTER = (
    "<p><small>Generated by Replication Checker using the FORRT Replication Database (FReD)</small></p>"
)

_HREF_RE = re.compile(r'<a\s+href="([^"]+)"', re.IGNORECASE)
_UL_CLOSE = "</ul>"


@dataclass
class MaterializeOutcome:
    """What an adapter did (or would do) for one record.

    Attributes:
        local_id: The record the side effects were applied to
        action: "updated", "unchanged", "would_update" or "error"
        tags_added: Tags that were missing and got added
        notes_written: Relation kinds whose note was created or extended
        related_items_added: Keys of items created for related studies
        links_added: Number of new relation links between items
        message: Error or informational message
    """

    local_id: str
    action: str
    tags_added: list[str] = field(default_factory=list)
    notes_written: list[RelationKind] = field(default_factory=list)
    related_items_added: list[str] = field(default_factory=list)
    links_added: int = 0
    message: str | None = None


class ResultMaterializer(ABC):
    """Applies a record's matches to the host library."""

    @abstractmethod
    def apply(self, result: RecordResult) -> MaterializeOutcome:
        """Apply tags, notes and links for ``result``; must be idempotent."""

    def apply_all(self, results: Iterable[RecordResult]) -> list[MaterializeOutcome]:
        return [self.apply(r) for r in results if r.has_matches]


# ------------- Helpers -------------


def dedupe_relations(relations: Iterable[CandidateRelation]) -> list[CandidateRelation]:
    """Drop repeated relations (same DOI/URL identity), keeping the first.

    Relations without any identity are kept as they cannot be compared.
    """
    seen: set[str] = set()
    unique: list[CandidateRelation] = []
    for rel in relations:
        ident = relation_identity(rel)
        if ident is not None:
            if ident in seen:
                continue
            seen.add(ident)
        unique.append(rel)
    return unique


def tags_for(result: RecordResult) -> list[str]:
    """Tags the checked item should carry, in a stable order."""
    tags: list[str] = []
    for kind in RelationKind:
        relations = result.of_kind(kind)
        if not relations:
            continue
        tags.append(KIND_TAGS[kind])
        if kind is RelationKind.REPLICATION:
            table = REPLICATION_OUTCOME_TAGS
        elif kind is RelationKind.REPRODUCTION:
            table = REPRODUCTION_OUTCOME_TAGS
        else:
            continue
        for rel in relations:
            tag = table.get((rel.outcome or "").lower().strip())
            if tag and tag not in tags:
                tags.append(tag)
    return tags


def format_authors(relation: CandidateRelation) -> str:
    """APA-like author list: ``Family, G. I., Family, G. & Family, G.``"""
    if not relation.authors:
        return "No authors available"
    parts = []
    for a in relation.authors:
        initials = " ".join(f"{p[0]}." for p in a.given.split() if p)
        parts.append(f"{a.family}, {initials}".strip().rstrip(","))
    if len(parts) == 1:
        return parts[0]
    return ", ".join(parts[:-1]) + " & " + parts[-1]


def _esc(value: object) -> str:
    return html.escape(str(value), quote=True) if value not in (None, "") else ""


def render_relation_li(relation: CandidateRelation) -> str:
    """One ``<li>`` describing a related study."""
    li = "<li>"
    li += f"<strong>{_esc(relation.title) or 'No title available'}</strong><br>"
    li += f"{_esc(format_authors(relation))} ({_esc(relation.year) or 'N/A'})<br>"
    li += f"<em>{_esc(relation.journal) or 'No journal'}</em><br>"
    if relation.doi:
        li += f'DOI: <a href="https://doi.org/{_esc(relation.doi)}">{_esc(relation.doi)}</a><br>'
    if relation.outcome:
        li += f"Author Reported Outcome: <strong>{_esc(relation.outcome)}</strong><br>"
    if relation.outcome_quote:
        li += f'<em>"{_esc(relation.outcome_quote)}"</em><br>'
    if relation.url and relation.url.startswith("https"):
        li += f'Linked report: <a href="{_esc(relation.url)}">{_esc(relation.url)}</a><br>'
    li += "</li>"
    return li


def note_heading(kind: RelationKind) -> str:
    return f"<h2>{NOTE_HEADINGS[kind]}</h2>"


def render_note(kind: RelationKind, relations: Iterable[CandidateRelation]) -> str:
    """Full HTML note listing the related studies of one kind."""
    body = "".join(render_relation_li(r) for r in relations)
    return (
        f"{note_heading(kind)}"
        "<i>This is an automatically generated note. Do not make changes!</i><br>"
        f"<p>{NOTE_INTROS[kind]}</p>"
        f"<ul>{body}</ul>"
        f"{NOTE_FOOTER}"
    )


def is_checker_note(note_html: str, kind: RelationKind) -> bool:
    return note_html.lstrip().startswith(note_heading(kind))


def note_identities(note_html: str) -> set[str]:
    """Identities of the relations already listed in a note, from its links."""
    identities: set[str] = set()
    for href in _HREF_RE.findall(note_html):
        href = html.unescape(href)
        if href.lower().startswith(("https://doi.org/", "http://doi.org/")):
            ident = doi_identity(href)
        else:
            ident = url_identity(href)
        if ident:
            identities.add(ident)
    return identities


def extend_note(note_html: str, relations: Iterable[CandidateRelation]) -> tuple[str, int]:
    """Append relations missing from an existing note.

    Returns:
        Tuple of (new_html, number_added). A note without a list is rebuilt
        by the caller.
    """
    if _UL_CLOSE not in note_html:
        return note_html, 0
    present = note_identities(note_html)
    additions = []
    for rel in relations:
        ident = relation_identity(rel)
        if ident and ident in present:
            continue
        additions.append(render_relation_li(rel))
        if ident:
            present.add(ident)
    if not additions:
        return note_html, 0
    idx = note_html.rfind(_UL_CLOSE)
    return note_html[:idx] + "".join(additions) + note_html[idx:], len(additions)

