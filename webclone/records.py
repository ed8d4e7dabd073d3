from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

from .layout import url_to_file_path
from .urls import HTML_LIKE_EXTS, normalize_url, url_extension

# -------------------- Records --------------------


@dataclass(frozen=True)
class Record:
    local_path: Path
    content_type: str = ""
    http_status: int = 0
    is_page: bool = False
    predicted: bool = True
    origin_url: str = ""


class RecordStore:
    """Canonical URL -> Record, shared by every worker of one run.

    A record starts out *predicted*, so that pages archived early can link
    to content that has not been written yet, and becomes *finalized* once
    its bytes are on disk. Finalized records are never replaced.
    """

    def __init__(self, root_dir: Path):
        self.root_dir = Path(root_dir)
        self._records: Dict[str, Record] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, url: str) -> bool:
        return normalize_url(url) in self._records

    def get(self, url: str) -> Optional[Record]:
        norm = normalize_url(url)
        if not norm:
            return None
        return self._records.get(norm)

    def items(self) -> Iterator[Tuple[str, Record]]:
        return iter(list(self._records.items()))

    def predict(
        self, url: str, guess_is_page: bool = False, found_on: Optional[str] = None
    ) -> Optional[Record]:
        norm = normalize_url(url)
        if not norm:
            return None
        existing = self._records.get(norm)
        if existing is not None and not existing.predicted:
            return existing
        # a predicted path may already be linked from archived pages
        if existing is not None and (existing.is_page or not guess_is_page):
            return existing

        ext = url_extension(norm)
        looks_page = guess_is_page or not ext or ext in HTML_LIKE_EXTS
        content_type = "text/html" if looks_page else ""
        rec = Record(
            local_path=url_to_file_path(self.root_dir, norm, content_type, looks_page),
            content_type=content_type,
            http_status=0,
            is_page=looks_page,
            predicted=True,
            origin_url=found_on or norm,
        )
        self._records[norm] = rec
        return rec

    def finalize(
        self,
        url: str,
        local_path: Path,
        content_type: str,
        http_status: int,
        is_page: bool,
        found_on: Optional[str] = None,
    ) -> Record:
        norm = normalize_url(url) or url
        existing = self._records.get(norm)
        if existing is not None and not existing.predicted:
            return existing
        rec = Record(
            local_path=Path(local_path),
            content_type=content_type or "",
            http_status=http_status,
            is_page=bool(is_page),
            predicted=False,
            origin_url=found_on or (existing.origin_url if existing else norm),
        )
        self._records[norm] = rec
        return rec
