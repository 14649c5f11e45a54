"""Lexicon-driven CTM normalization: compound numbers and split compounds.

Both passes are driven by plain-text tables so the language-specific lexicons
stay outside the code.

``number_words`` lists one number word per line. A line starting with ``+``
declares a joiner (Dutch ``en`` in ``drie en twintig``) that is absorbed when
it sits between two number words.

``compound_words`` lists a compound followed by the parts it is split into,
e.g. ``voetbalveld voetbal veld``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from .ctm import CtmEntry
from .tables import iter_fields


def _merge(run: Sequence[CtmEntry], word: str) -> CtmEntry:
    first, last = run[0], run[-1]
    confidences = [entry.confidence for entry in run]
    confidence = None if any(c is None for c in confidences) else min(confidences)  # type: ignore[type-var]
    return CtmEntry(
        first.utterance,
        first.channel,
        first.start,
        round(last.end - first.start, 3),
        word,
        confidence,
    )


def _same_stream(a: CtmEntry, b: CtmEntry) -> bool:
    return a.utterance == b.utterance and a.channel == b.channel


@dataclass
class NormalizationTables:
    number_words: frozenset[str] = frozenset()
    number_joiners: frozenset[str] = frozenset()
    compounds: dict[tuple[str, ...], str] = field(default_factory=dict)

    @classmethod
    def load(cls, number_words: Path | None = None, compound_words: Path | None = None) -> "NormalizationTables":
        numbers: set[str] = set()
        joiners: set[str] = set()
        compounds: dict[tuple[str, ...], str] = {}
        if number_words is not None:
            for _lineno, fields in iter_fields(number_words, 1):
                token = fields[0]
                if token.startswith("+"):
                    joiners.add(token[1:])
                else:
                    numbers.add(token)
        if compound_words is not None:
            for lineno, fields in iter_fields(compound_words, 3):
                parts = tuple(fields[1:])
                if parts in compounds and compounds[parts] != fields[0]:
                    raise ValueError(f"{compound_words}:{lineno}: parts {parts} already map to {compounds[parts]}")
                compounds[parts] = fields[0]
        return cls(frozenset(numbers), frozenset(joiners), compounds)

    def combine_numbers(self, entries: Sequence[CtmEntry]) -> list[CtmEntry]:
        """Merge runs of adjacent number words into one token.

        A run needs at least two number words; joiners count only between two
        number words of the same utterance and channel.
        """

        if not self.number_words:
            return list(entries)
        out: list[CtmEntry] = []
        i = 0
        n = len(entries)
        while i < n:
            if entries[i].word not in self.number_words:
                out.append(entries[i])
                i += 1
                continue
            run = [entries[i]]
            j = i + 1
            while j < n and _same_stream(entries[i], entries[j]):
                word = entries[j].word
                if word in self.number_words:
                    run.append(entries[j])
                    j += 1
                elif (
                    word in self.number_joiners
                    and j + 1 < n
                    and _same_stream(entries[i], entries[j + 1])
                    and entries[j + 1].word in self.number_words
                ):
                    run.extend((entries[j], entries[j + 1]))
                    j += 2
                else:
                    break
            if len(run) == 1:
                out.append(run[0])
            else:
                out.append(_merge(run, "".join(entry.word for entry in run)))
            i = j
        return out

    def restore_compounds(self, entries: Sequence[CtmEntry]) -> list[CtmEntry]:
        """Replace known part sequences by their compound, longest match first."""

        if not self.compounds:
            return list(entries)
        longest = max(len(parts) for parts in self.compounds)
        out: list[CtmEntry] = []
        i = 0
        n = len(entries)
        while i < n:
            matched = False
            for size in range(min(longest, n - i), 1, -1):
                window = entries[i : i + size]
                if not all(_same_stream(entries[i], entry) for entry in window):
                    continue
                compound = self.compounds.get(tuple(entry.word for entry in window))
                if compound is not None:
                    out.append(_merge(window, compound))
                    i += size
                    matched = True
                    break
            if not matched:
                out.append(entries[i])
                i += 1
        return out


__all__ = ["NormalizationTables"]
