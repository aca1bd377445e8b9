from __future__ import annotations

import gzip
import io
import logging
import posixpath
import tarfile
import zlib
from typing import Optional

import markdown
import nh3

from alexandrie.domain.models import CrateMeta

logger = logging.getLogger(__name__)

MARKDOWN_EXTENSIONS = ["extra", "sane_lists", "toc"]

ALLOWED_TAGS = nh3.ALLOWED_TAGS | {
    "h1", "h2", "h3", "h4", "h5", "h6", "p", "pre", "code", "img", "table", "thead",
    "tbody", "tr", "th", "td", "hr", "br", "details", "summary", "sup", "sub", "del",
}
ALLOWED_ATTRIBUTES = {
    **nh3.ALLOWED_ATTRIBUTES,
    "a": {"href", "title"},
    "img": {"src", "alt", "title", "width", "height"},
    "code": {"class"},
    "th": {"align"},
    "td": {"align"},
    "h1": {"id"}, "h2": {"id"}, "h3": {"id"}, "h4": {"id"}, "h5": {"id"}, "h6": {"id"},
}

MAX_README_SIZE = 1024 * 1024


def render_readme(source: str) -> str:
    """Render Markdown to HTML with scripts, handlers and unsafe URLs removed."""
    html = markdown.markdown(source, extensions=MARKDOWN_EXTENSIONS)
    return nh3.clean(html, tags=ALLOWED_TAGS, attributes=ALLOWED_ATTRIBUTES)


def extract_readme(tarball: bytes, meta: CrateMeta) -> Optional[str]:
    """
    Pull the README out of a `.crate` tarball.

    Files are laid out under `<name>-<vers>/`; `readme_file` from the
    metadata is used when set, `README.md` otherwise.
    """
    root = f"{meta.name}-{meta.vers}"
    member_name = posixpath.normpath(posixpath.join(root, meta.readme_file or "README.md"))
    if not member_name.startswith(root + "/"):
        return None

    with tarfile.open(fileobj=io.BytesIO(tarball), mode="r:gz") as archive:
        try:
            member = archive.getmember(member_name)
        except KeyError:
            return None
        if not member.isfile() or member.size > MAX_README_SIZE:
            return None
        f = archive.extractfile(member)
        if f is None:
            return None
        return f.read().decode("utf-8", errors="replace")


def prepare_readme(meta: CrateMeta, tarball: bytes) -> Optional[str]:
    """
    Rendered README HTML for a publish, or None.

    Any failure degrades to no README.
    """
    try:
        source = meta.readme
        if source is None:
            source = extract_readme(tarball, meta)
        if source is None:
            return None
        return render_readme(source)
    except (tarfile.TarError, gzip.BadGzipFile, zlib.error, EOFError, OSError, ValueError) as e:
        logger.warning(f"Could not render README of {meta.name}#{meta.vers}: {e}")
        return None
