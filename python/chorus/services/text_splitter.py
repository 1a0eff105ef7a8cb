"""Recursive character text splitter.

Splits text on the highest-priority separator it contains, merges the
pieces back into chunks of at most chunk_size characters, and recurses into
pieces that are still too large with the remaining separators. Used by the
token budgeter to cut a prompt at a natural boundary.
"""

from chorus.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SEPARATORS = ("\n\n", "\n", ".", ",", ">", "<", " ", "")


class RecursiveCharacterTextSplitter:
    def __init__(
        self,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
        separators: tuple[str, ...] = DEFAULT_SEPARATORS,
    ):
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separators = separators

    def split_text(self, text: str) -> list[str]:
        """Split text into chunks no longer than chunk_size where possible.

        Raises:
            ValueError: If chunk_overlap >= chunk_size.
        """
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("Cannot have chunk_overlap >= chunk_size")

        separator = self._find_separator(text)
        splits = text.split(separator) if separator else list(text)

        # Whole text fits: keep words, but rejoin "(...)" phrases split by a space
        if separator == " ":
            combined = self._handle_space_case(splits, text)
            if combined is not None:
                return combined

        final_chunks: list[str] = []
        good_splits: list[str] = []
        for piece in splits:
            if len(piece) < self.chunk_size:
                good_splits.append(piece)
                continue
            if good_splits:
                final_chunks.extend(self.merge_splits(good_splits, separator))
                good_splits = []
            final_chunks.extend(self.split_text(piece))
        if good_splits:
            final_chunks.extend(self.merge_splits(good_splits, separator))
        return final_chunks

    def merge_splits(self, splits: list[str], separator: str) -> list[str]:
        """Greedily merge splits into chunks, carrying up to chunk_overlap chars."""
        docs: list[str] = []
        current: list[str] = []
        total = 0
        # No overlap at character level
        overlap_limit = 0 if separator == "" else self.chunk_overlap

        for piece in splits:
            length = len(piece)
            if total + length > self.chunk_size:
                if total > self.chunk_size:
                    logger.warning(
                        "text_splitter_oversized_chunk",
                        chunk_chars=total,
                        chunk_size=self.chunk_size,
                    )
                if current:
                    doc = self._join(current, separator)
                    if doc is not None:
                        docs.append(doc)
                    while current and (
                        total > overlap_limit or total + length > self.chunk_size
                    ):
                        total -= len(current.pop(0))
            current.append(piece)
            total += length

        doc = self._join(current, separator)
        if doc is not None:
            docs.append(doc)
        return docs

    def _find_separator(self, text: str) -> str:
        for sep in self.separators:
            if sep == "" or sep in text:
                return sep
        return self.separators[-1] if self.separators else ""

    def _handle_space_case(self, splits: list[str], text: str) -> list[str] | None:
        if not splits or not splits[0].strip():
            return None
        if len(text.strip()) > self.chunk_size:
            return None

        parts = [s.strip() for s in splits if s.strip()]
        combined: list[str] = []
        i = 0
        while i < len(parts):
            current = parts[i]
            following = parts[i + 1] if i + 1 < len(parts) else ""
            if "(" in current and ")" not in current and ")" in following:
                combined.append(f"{current} {following}")
                i += 2
            else:
                combined.append(current)
                i += 1
        return combined

    @staticmethod
    def _join(docs: list[str], separator: str) -> str | None:
        text = separator.join(docs).strip()
        return text or None
