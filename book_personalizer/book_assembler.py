from typing import Sequence

from loguru import logger

from .models import BookMetadata, PersonalizedBook, ProcessedPageResult


class BookAssembler:
    """Turns processed page results into the final, page-ordered book."""

    def assemble(self, processed_pages: Sequence[ProcessedPageResult], book_title: str, child_name: str) -> PersonalizedBook:
        # sorted() is stable, so duplicate page numbers keep arrival order
        pages = sorted(processed_pages, key=lambda page: page.page_number)
        successful_pages = sum(1 for page in pages if page.success)
        failed_pages = len(pages) - successful_pages

        metadata = BookMetadata(
            title=book_title,
            child_name=child_name,
            total_pages=len(pages),
            successful_pages=successful_pages,
            failed_pages=failed_pages,
        )
        logger.info(f"Assembled '{book_title}' for {child_name}: {successful_pages}/{len(pages)} pages personalized")
        return PersonalizedBook(metadata=metadata, pages=pages, success=successful_pages > 0)
