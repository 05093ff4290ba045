from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class PageRecord:
    """One book page as supplied by the caller (base64 image, 1-based number)."""
    page_number: int
    page_image: str


@dataclass(frozen=True)
class CharacterDescriptor:
    """A detected or assumed character on a page.

    The boolean flags are tri-state: ``None`` means the detector did not say,
    which matters for the "not flagged as X" checks in the mapping policy.
    """
    description: str = ""
    position: str = ""
    size: str = ""
    emotion: str = ""
    pose: str = ""
    is_main_character: Optional[bool] = None
    is_human: Optional[bool] = None
    is_animal: Optional[bool] = None
    replace_with_child: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PageMapping:
    """Binds a page to the character that will be replaced on it."""
    page: PageRecord
    character: CharacterDescriptor
    replacement_needed: bool = True

    @property
    def page_number(self) -> int:
        return self.page.page_number

    @property
    def page_image(self) -> str:
        return self.page.page_image


@dataclass(frozen=True)
class ProcessedPageResult:
    """Outcome of generation for one page.

    ``processed_image`` is always populated: the generated image on success,
    the original page image when ``used_original`` is set.
    """
    page_number: int
    processed_image: str
    success: bool
    attempts: int = 0
    error: Optional[str] = None
    used_original: bool = False
    character: Optional[str] = None

    def to_dict(self, include_image: bool = False) -> Dict[str, Any]:
        data = asdict(self)
        if not include_image:
            data.pop('processed_image')
        return data


@dataclass(frozen=True)
class BookMetadata:
    title: str
    child_name: str
    total_pages: int
    successful_pages: int
    failed_pages: int
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass(frozen=True)
class PersonalizedBook:
    """Final ordered book: one entry per input page."""
    metadata: BookMetadata
    pages: List[ProcessedPageResult]
    success: bool

    def to_dict(self, include_images: bool = False) -> Dict[str, Any]:
        return {
            'metadata': asdict(self.metadata),
            'pages': [page.to_dict(include_image=include_images) for page in self.pages],
            'success': self.success,
        }


@dataclass(frozen=True)
class PageAnalysis:
    """Raw character-detection payload for one page."""
    page_number: int
    characters: List[Dict[str, Any]] = field(default_factory=list)
    scene: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass(frozen=True)
class CoverResult:
    image: str
    success: bool
    attempts: int = 0
    used_original: bool = False
    error: Optional[str] = None


@dataclass
class ProcessingReport:
    """Everything a single personalization run produced."""
    book: PersonalizedBook
    mappings: List[PageMapping]
    processing_time_ms: int
    cover: Optional[CoverResult] = None
    analyses: List[PageAnalysis] = field(default_factory=list)

    @property
    def character_replacements(self) -> int:
        return sum(1 for mapping in self.mappings if mapping.replacement_needed)

    def to_dict(self) -> Dict[str, Any]:
        report = {
            'success': self.book.success,
            'total_pages': self.book.metadata.total_pages,
            'processing_time_ms': self.processing_time_ms,
            'character_replacements': self.character_replacements,
            'book': self.book.to_dict(),
            'character_mapping': [
                {'page_number': m.page_number, 'character': m.character.to_dict()}
                for m in self.mappings
            ],
        }
        if self.cover is not None:
            report['cover'] = {
                'success': self.cover.success,
                'attempts': self.cover.attempts,
                'used_original': self.cover.used_original,
                'error': self.cover.error,
            }
        return report
