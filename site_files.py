# site_files.py
# -*- coding: utf-8 -*-
"""
Static file resolution and directory listings.

Everything here works only on its arguments and the filesystem, so it is safe
to call from any number of concurrent requests.
"""
import os
import html
import posixpath
import unicodedata
from datetime import datetime
from typing import List, Optional
from urllib.parse import quote, unquote

HIDDEN_PREFIX = "."

Byte = 1
KB = Byte * 1024
MB = KB * 1024
GB = MB * 1024
TB = GB * 1024


# --- PathResolver ---

class PathResolutionError(Exception):
    status_code = 500
    detail = "Internal Server Error"


class PathForbiddenError(PathResolutionError):
    status_code = 403
    detail = "Forbidden"


class PathNotFoundError(PathResolutionError):
    status_code = 404
    detail = "Not Found"


class ResolvedPath:
    def __init__(self, fs_path: str, is_dir: bool, redirect: Optional[str] = None):
        self.fs_path = fs_path
        self.is_dir = is_dir
        # set when a directory was requested without its trailing slash
        self.redirect = redirect

    def __repr__(self):
        return f"ResolvedPath({self.fs_path!r}, is_dir={self.is_dir}, redirect={self.redirect!r})"


def is_within(path: str, root: str) -> bool:
    """True if the absolute `path` is `root` or lies below it (component-wise)."""
    try:
        return os.path.commonpath([path, root]) == root
    except ValueError:
        # different drives on Windows
        return False


def resolve_request_path(request_path: str, root_dir: str, serve_hidden: bool = True) -> ResolvedPath:
    """
    Maps a (percent-encoded) URL path onto a filesystem path under root_dir.

    Raises PathForbiddenError when the canonical result escapes the root and
    PathNotFoundError when nothing exists there. With serve_hidden=False, any
    path segment starting with "." is reported as not found.
    """
    decoded = unquote(request_path)
    if "\x00" in decoded:
        raise PathForbiddenError(request_path)

    cleaned = posixpath.normpath(decoded) if decoded else "/"
    root = os.path.abspath(root_dir)
    candidate = os.path.abspath(os.path.join(root, cleaned.lstrip("/")))
    if not is_within(candidate, root):
        raise PathForbiddenError(request_path)

    if not serve_hidden:
        relative = os.path.relpath(candidate, root)
        if any(part.startswith(HIDDEN_PREFIX) for part in relative.split(os.sep) if part not in (".", "..")):
            raise PathNotFoundError(request_path)

    if not os.path.exists(candidate):
        raise PathNotFoundError(request_path)

    if os.path.isdir(candidate):
        redirect = None
        if not request_path.endswith("/"):
            # rebuilt from the cleaned path so "//host" cannot become a protocol-relative URL
            segments = cleaned.strip("/")
            redirect = "/" + quote(segments, safe="/") + "/" if segments else "/"
        return ResolvedPath(candidate, True, redirect)
    return ResolvedPath(candidate, False)


# --- DirectoryListingBuilder ---

class Collator:
    """Locale-neutral, case-insensitive ordering keys."""

    def key(self, text: str):
        return unicodedata.normalize("NFKD", text).casefold()


class FileEntry:
    def __init__(self, name: str, url: str, size: str, mod_time: str, is_dir: bool, icon: str):
        self.name = name
        self.url = url
        self.size = size
        self.mod_time = mod_time
        self.is_dir = is_dir
        self.icon = icon

    def __repr__(self):
        return f"FileEntry({self.name!r})"


class DirectoryListing:
    def __init__(self, path: str, parent: str, has_parent: bool, entries: List[FileEntry]):
        self.path = path
        self.parent = parent
        self.has_parent = has_parent
        self.entries = entries


def format_size(size: int) -> str:
    if size >= TB:
        return f"{size / TB:.2f} TB"
    if size >= GB:
        return f"{size / GB:.2f} GB"
    if size >= MB:
        return f"{size / MB:.2f} MB"
    if size >= KB:
        return f"{size / KB:.2f} KB"
    if size > Byte:
        return f"{size} Bytes"
    return f"{size} Byte"


ICON_CATEGORIES = {
    "web": (".html", ".htm"),
    "style": (".css",),
    "script": (".js", ".ts", ".jsx", ".tsx"),
    "code": (".go", ".py", ".java", ".c", ".cpp", ".rs", ".rb"),
    "data": (".json", ".yaml", ".yml", ".toml", ".xml"),
    "document": (".md", ".txt", ".doc", ".docx", ".pdf"),
    "image": (".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".ico", ".bmp"),
    "video": (".mp4", ".avi", ".mov", ".mkv", ".webm"),
    "audio": (".mp3", ".wav", ".flac", ".ogg", ".aac"),
    "archive": (".zip", ".tar", ".gz", ".rar", ".7z", ".bz2"),
    "executable": (".exe", ".bin", ".sh", ".bat"),
}

ICONS = {
    "folder": "📁",
    "web": "🌐",
    "style": "🎨",
    "script": "📜",
    "code": "💻",
    "data": "📋",
    "document": "📄",
    "image": "🖼️",
    "video": "🎬",
    "audio": "🎵",
    "archive": "📦",
    "executable": "⚙️",
    "default": "📄",
}

_EXT_CATEGORY = {ext: category for category, exts in ICON_CATEGORIES.items() for ext in exts}


def icon_category(name: str, is_dir: bool) -> str:
    if is_dir:
        return "folder"
    return _EXT_CATEGORY.get(os.path.splitext(name)[1].lower(), "default")


def _sort_key(entry: FileEntry, collator: Collator):
    if entry.is_dir:
        name = entry.name.rstrip("/")
        return (0, False, "", collator.key(name), name)
    stem, ext = os.path.splitext(entry.name)
    ext = ext.lower()
    # no extension sorts after every extension
    return (1, ext == "", collator.key(ext), collator.key(stem), entry.name)


def build_directory_listing(directory: str, url_path: str,
                            collator: Optional[Collator] = None) -> DirectoryListing:
    """Lists the non-hidden children of `directory`; raises OSError if it cannot be read."""
    collator = collator or Collator()
    if not url_path.endswith("/"):
        url_path += "/"

    entries = []
    with os.scandir(directory) as it:
        for child in it:
            if child.name.startswith(HIDDEN_PREFIX):
                continue
            try:
                is_dir = child.is_dir()
                info = child.stat()
            except OSError:
                continue

            url = posixpath.join(url_path, quote(child.name, safe=""))
            if is_dir:
                name, url, size = child.name + "/", url + "/", "-"
            else:
                name, size = child.name, format_size(info.st_size)

            entries.append(FileEntry(
                name=name,
                url=url,
                size=size,
                mod_time=datetime.fromtimestamp(info.st_mtime).strftime("%Y-%m-%d %H:%M:%S"),
                is_dir=is_dir,
                icon=icon_category(child.name, is_dir),
            ))

    entries.sort(key=lambda e: _sort_key(e, collator))

    has_parent = url_path != "/"
    parent = ""
    if has_parent:
        parent = posixpath.dirname(url_path.rstrip("/"))
        if parent != "/":
            parent += "/"
    return DirectoryListing(url_path, parent, has_parent, entries)


_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Index of {path}</title>
<style>
body {{ font-family: -apple-system, "Segoe UI", Roboto, sans-serif; margin: 2em; color: #222; }}
table {{ border-collapse: collapse; width: 100%; }}
th, td {{ text-align: left; padding: .35em .8em; border-bottom: 1px solid #eee; }}
td.size, td.time {{ white-space: nowrap; color: #666; }}
a {{ text-decoration: none; color: #0366d6; }}
</style>
</head>
<body>
<h1>Index of {path}</h1>
<table>
<thead><tr><th>Name</th><th>Size</th><th>Modified</th></tr></thead>
<tbody>
{rows}
</tbody>
</table>
</body>
</html>
"""

_ROW = '<tr><td>{icon} <a href="{url}">{name}</a></td><td class="size">{size}</td><td class="time">{mod_time}</td></tr>'


def render_listing_page(listing: DirectoryListing) -> str:
    rows = []
    if listing.has_parent:
        rows.append(_ROW.format(icon=ICONS["folder"], url=html.escape(listing.parent),
                                name="../", size="", mod_time=""))
    for entry in listing.entries:
        rows.append(_ROW.format(
            icon=ICONS[entry.icon],
            url=html.escape(entry.url),
            name=html.escape(entry.name),
            size=entry.size,
            mod_time=entry.mod_time,
        ))
    return _PAGE.format(path=html.escape(unquote(listing.path)), rows="\n".join(rows))
