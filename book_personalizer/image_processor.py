import base64
import binascii
import re
from io import BytesIO
from pathlib import Path
from typing import List, Optional

from PIL import Image
from loguru import logger

from .models import CoverResult, PersonalizedBook

DATA_URI_PATTERN = re.compile(r'^data:(image/[\w.+-]+);base64,', re.IGNORECASE)
IMAGE_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.webp'}

# Leading base64 characters of common image signatures
_BASE64_SIGNATURES = {
    'iVBORw0KGgo': 'image/png',
    '/9j/': 'image/jpeg',
    'UklGR': 'image/webp',
    'R0lGOD': 'image/gif',
}


def strip_data_uri(image: str) -> str:
    """Remove a ``data:image/...;base64,`` prefix if present."""
    return DATA_URI_PATTERN.sub('', image.strip(), count=1)


def guess_mime_type(image: str) -> str:
    """MIME type from a data URI prefix, else from the base64 signature, else JPEG."""
    match = DATA_URI_PATTERN.match(image.strip())
    if match:
        return match.group(1).lower()
    payload = strip_data_uri(image)
    for signature, mime_type in _BASE64_SIGNATURES.items():
        if payload.startswith(signature):
            return mime_type
    return 'image/jpeg'


def encode_image_file(path: Path) -> str:
    with open(path, 'rb') as f:
        return base64.b64encode(f.read()).decode('utf-8')


def _natural_key(path: Path) -> list:
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r'(\d+)', path.name)]


def load_page_images(directory: Path) -> List[str]:
    """Read every image in ``directory`` as base64, in natural filename order (page_2 before page_10)."""
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Page directory not found: {directory}")

    files = sorted((p for p in directory.iterdir() if p.suffix.lower() in IMAGE_EXTENSIONS), key=_natural_key)
    logger.info(f"Found {len(files)} page images in {directory}")
    return [encode_image_file(path) for path in files]


def decode_image(image: str) -> Image.Image:
    """Open a base64 (optionally data-URI) image with Pillow."""
    try:
        image_data = base64.b64decode(strip_data_uri(image), validate=False)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 image data: {e}") from e
    img = Image.open(BytesIO(image_data))
    img.load()
    return img


def fit_to_page(img: Image.Image,
                target_width: int = 1024,
                target_height: int = 1024,
                image_format: str = 'RGB',
                maintain_aspect: bool = True,
                smart_crop: bool = False,
                bg_color: str = 'white') -> Image.Image:
    """Resize ``img`` onto a fixed page canvas (letterbox, crop-to-fill or stretch)."""
    if img.mode != image_format:
        img = img.convert(image_format)

    resize_method = Image.Resampling.LANCZOS
    width_ratio = target_width / img.width if img.width > 0 else 1
    height_ratio = target_height / img.height if img.height > 0 else 1

    if maintain_aspect and not smart_crop:
        # Letterbox onto a blank background
        background = Image.new(image_format, (target_width, target_height), bg_color)
        scale_factor = min(width_ratio, height_ratio)
        new_width = max(1, int(img.width * scale_factor))
        new_height = max(1, int(img.height * scale_factor))
        img_resized = img.resize((new_width, new_height), resize_method)
        x = (target_width - new_width) // 2
        y = (target_height - new_height) // 2
        background.paste(img_resized, (x, y))
        return background

    if maintain_aspect and smart_crop:
        # Fill the canvas completely and crop the excess
        scale_factor = max(width_ratio, height_ratio)
        new_width = max(target_width, int(img.width * scale_factor))
        new_height = max(target_height, int(img.height * scale_factor))
        img_resized = img.resize((new_width, new_height), resize_method)
        left = (new_width - target_width) // 2
        top = (new_height - target_height) // 2
        return img_resized.crop((left, top, left + target_width, top + target_height))

    return img.resize((target_width, target_height), resize_method)


def save_book_pages(book: PersonalizedBook, output_dir: Path, cover: Optional[CoverResult] = None) -> List[Path]:
    """Write each processed page (and the cover) as PNG; returns the written paths."""
    pages_dir = Path(output_dir) / "pages"
    pages_dir.mkdir(parents=True, exist_ok=True)

    saved = []
    if cover is not None:
        cover_path = pages_dir / "cover.png"
        try:
            decode_image(cover.image).save(cover_path, "PNG")
            saved.append(cover_path)
        except Exception as e:
            logger.error(f"Error saving cover image: {str(e)}")

    for page in book.pages:
        page_path = pages_dir / f"page_{page.page_number:02d}.png"
        try:
            decode_image(page.processed_image).save(page_path, "PNG")
            saved.append(page_path)
            logger.debug(f"Saved page {page.page_number} to {page_path}")
        except Exception as e:
            logger.error(f"Error saving image for page {page.page_number}: {str(e)}")
            continue

    logger.info(f"Saved {len(saved)} images to {pages_dir}")
    return saved


def write_book_pdf(book: PersonalizedBook,
                   pdf_path: Path,
                   cover: Optional[CoverResult] = None,
                   page_width: int = 1024,
                   page_height: int = 1024,
                   maintain_aspect: bool = True,
                   smart_crop: bool = False,
                   bg_color: str = 'white') -> Optional[Path]:
    """Assemble the cover and pages (in book order) into one PDF."""
    sources = []
    if cover is not None:
        sources.append(("cover", cover.image))
    sources.extend((f"page {page.page_number}", page.processed_image) for page in book.pages)

    pdf_pages = []
    for label, image in sources:
        try:
            pdf_pages.append(fit_to_page(decode_image(image), page_width, page_height,
                                         maintain_aspect=maintain_aspect, smart_crop=smart_crop,
                                         bg_color=bg_color))
        except Exception as e:
            logger.error(f"Skipping {label} in PDF, image could not be decoded: {str(e)}")

    if not pdf_pages:
        logger.error("No decodable pages, PDF not written")
        return None

    pdf_path = Path(pdf_path)
    pdf_path.parent.mkdir(parents=True, exist_ok=True)
    first, rest = pdf_pages[0], pdf_pages[1:]
    first.save(pdf_path, "PDF", save_all=True, append_images=rest, resolution=150.0)
    logger.info(f"Wrote {len(pdf_pages)}-page PDF to {pdf_path}")
    return pdf_path
