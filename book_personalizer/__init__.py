from .book_processor import BookProcessor
from .cancellation import CancellationToken
from .config import Settings, load_settings
from .models import PersonalizedBook, ProcessedPageResult, ProcessingReport

__all__ = [
    'BookProcessor',
    'CancellationToken',
    'Settings',
    'load_settings',
    'PersonalizedBook',
    'ProcessedPageResult',
    'ProcessingReport',
]
