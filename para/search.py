"""Inverted index over note titles and bodies.

Every query word has to match (as a substring) some token of a note for the
note to be a hit. Hits are ranked in three tiers:

* the whole query equals the note title,
* every query word occurs in the title,
* the words only occur in the body,

with a small bonus for the number of matching tokens inside a tier. Equal
scores are ordered by path.
"""
from collections import Counter
from typing import NamedTuple

from .content import ContentStore, Document, tokenize

EXACT_TITLE = 3.0
TITLE = 2.0
BODY = 1.0


class SearchHit(NamedTuple):
    path: str
    snippet: str
    score: float


class Posting(NamedTuple):
    title_hits: int
    body_hits: int


class SearchEngine:

    def __init__(self, store: ContentStore, max_results: int = 50, snippet_width: int = 120):
        self.store = store
        self.max_results = max_results
        self.snippet_width = snippet_width
        self._postings: dict[str, dict[str, Posting]] = {}
        self._terms_by_path: dict[str, frozenset[str]] = {}
        self._title_terms: dict[str, frozenset[str]] = {}
        self._documents: dict[str, Document] = {}

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, path: str) -> bool:
        return path in self._documents

    def reindex(self, path: str, document: Document | None = None) -> None:
        doc = document if document is not None else self.store.get_or_load(path)
        self.remove(path)
        title_counts = Counter(t.text for t in tokenize(doc.title))
        body_counts = Counter(t.text for t in doc.tokens)
        terms = frozenset(title_counts) | frozenset(body_counts)
        for term in terms:
            bucket = self._postings.setdefault(term, {})
            bucket[path] = Posting(title_counts.get(term, 0), body_counts.get(term, 0))
        self._terms_by_path[path] = terms
        self._title_terms[path] = frozenset(title_counts)
        self._documents[path] = doc

    def remove(self, path: str) -> None:
        for term in self._terms_by_path.pop(path, ()):
            bucket = self._postings.get(term)
            if bucket is None:
                continue
            bucket.pop(path, None)
            if not bucket:
                del self._postings[term]
        self._title_terms.pop(path, None)
        self._documents.pop(path, None)

    def clear(self) -> None:
        self._postings.clear()
        self._terms_by_path.clear()
        self._title_terms.clear()
        self._documents.clear()

    def entries(self, path: str) -> dict[str, Posting]:
        return {term: self._postings[term][path] for term in sorted(self._terms_by_path.get(path, ()))}

    def query(self, text: str, limit: int | None = None) -> list[SearchHit]:
        needle = (text or "").strip().lower()
        if not needle:
            return []
        words = list(dict.fromkeys(t.text for t in tokenize(needle)))
        matched = self._match_words(words) if words else self._match_substring(needle)

        hits = []
        for path, count in matched.items():
            doc = self._documents[path]
            score = self._tier(path, doc, needle, words) + min(count, 99) / 100
            hits.append(SearchHit(path, self._snippet(doc, needle, words), round(score, 2)))
        hits.sort(key=lambda h: (-h.score, h.path))
        return hits[: limit or self.max_results]

    def _matching_terms(self, word: str):
        for term in self._postings:
            if word in term:
                yield term

    def _match_words(self, words: list[str]) -> dict[str, int]:
        matched: dict[str, int] | None = None
        for word in words:
            counts: dict[str, int] = {}
            for term in self._matching_terms(word):
                for path, posting in self._postings[term].items():
                    counts[path] = counts.get(path, 0) + posting.title_hits + posting.body_hits
            if matched is None:
                matched = counts
            else:
                matched = {p: matched[p] + n for p, n in counts.items() if p in matched}
            if not matched:
                return {}
        return matched or {}

    def _match_substring(self, needle: str) -> dict[str, int]:
        matched = {}
        for path, doc in self._documents.items():
            count = doc.raw_text.lower().count(needle) + doc.title.lower().count(needle)
            if count:
                matched[path] = count
        return matched

    def _tier(self, path: str, doc: Document, needle: str, words: list[str]) -> float:
        if doc.title.strip().lower() == needle:
            return EXACT_TITLE
        if words:
            title_terms = self._title_terms.get(path, frozenset())
            if all(any(w in t for t in title_terms) for w in words):
                return TITLE
        elif needle in doc.title.lower():
            return TITLE
        return BODY

    def _snippet(self, doc: Document, needle: str, words: list[str]) -> str:
        raw = doc.raw_text
        offset = None
        if words:
            for token in doc.tokens:
                if words[0] in token.text:
                    offset = token.offset
                    break
        else:
            found = raw.lower().find(needle)
            offset = found if found >= 0 else None
        if offset is None:
            offset = 0
        half = self.snippet_width // 2
        start = max(0, offset - half)
        end = min(len(raw), start + self.snippet_width)
        start = max(0, min(start, end - self.snippet_width))
        snippet = " ".join(raw[start:end].split())
        if start > 0:
            snippet = "..." + snippet
        if end < len(raw):
            snippet = snippet + "..."
        return snippet
