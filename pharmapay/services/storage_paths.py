"""Pure helpers for object-storage keys. No I/O happens here."""

import re
import time
import unicodedata
from typing import Mapping, Optional, Union
from urllib.parse import unquote, urlparse

from pharmapay.schemas.attachment import FileAttachment

# /storage/v1/object/public/<bucket>/<key...> or /storage/v1/object/sign/<bucket>/<key...>
_STORAGE_OBJECT_PATH = re.compile(r"/storage/[^/]+/object/(?:public|sign)/[^/]+/(.+)$")
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")

ATTACHMENT_PREFIX = "invoices"
PAYMENT_PROOF_PREFIX = "pagamento-"

AttachmentLike = Union[FileAttachment, Mapping, None]


def is_local_preview(url: Optional[str]) -> bool:
    """True for in-browser previews of files that were never uploaded."""
    return bool(url) and url.startswith("blob:")


def extract_storage_path_from_url(url: Optional[str]) -> Optional[str]:
    if not url or is_local_preview(url):
        return None
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    match = _STORAGE_OBJECT_PATH.search(parsed.path)
    if not match:
        return None
    return unquote(match.group(1))


def _field(attachment: AttachmentLike, name: str) -> Optional[str]:
    if attachment is None:
        return None
    if isinstance(attachment, Mapping):
        return attachment.get(name)
    return getattr(attachment, name, None)


def resolve_storage_path(attachment: AttachmentLike) -> Optional[str]:
    """Return the object key for an attachment, or None if it is not stored.

    A stored path wins unless it still carries a ``*`` placeholder; otherwise
    the key is recovered from a public or signed storage URL.
    """
    storage_path = _field(attachment, "storage_path")
    if storage_path and "*" not in storage_path:
        return storage_path
    return extract_storage_path_from_url(_field(attachment, "url"))


def sanitize_file_name(file_name: str) -> str:
    cleaned = unicodedata.normalize("NFD", (file_name or "").strip())
    cleaned = "".join(ch for ch in cleaned if not unicodedata.combining(ch))
    cleaned = _UNSAFE_CHARS.sub("_", cleaned)
    return cleaned or f"documento-{int(time.time() * 1000)}"


def build_attachment_path(invoice_id: str, file_name: str, prefix: str = "") -> str:
    return f"{ATTACHMENT_PREFIX}/{invoice_id}/{prefix}{sanitize_file_name(file_name)}"


def file_name_from_url(url: Optional[str], default: str = "documento") -> str:
    if not url:
        return default
    last = urlparse(url).path.rstrip("/").rsplit("/", 1)[-1]
    return unquote(last) or default
