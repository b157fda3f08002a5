"""
Archive Helpers
===============
Tar plumbing behind the container copy operations.

Packing (host -> container):
    A directory contributes its children (the directory itself is the
    destination); a single file is stored under its base name.

Extraction (container -> host):
    The daemon names archive entries after the requested path's base name.
    When a symbolic link was followed, entries are rebased back onto the
    name the caller asked for before extracting.
"""
import logging
import os
import posixpath
import tarfile
import tempfile
from typing import IO, Iterable

logger = logging.getLogger(__name__)

# Chunks above this size spill the spooled archive to disk
_SPOOL_MAX_SIZE = 16 * 1024 * 1024


def pack_path(host_path: str) -> IO[bytes]:
    """Tar ``host_path`` into a rewound temporary file."""
    archive_file = tempfile.TemporaryFile()
    with tarfile.open(fileobj=archive_file, mode="w") as tar:
        if os.path.isdir(host_path):
            for name in sorted(os.listdir(host_path)):
                tar.add(os.path.join(host_path, name), arcname=name)
        else:
            tar.add(host_path, arcname=os.path.basename(host_path))
    archive_file.seek(0)
    return archive_file


def resolve_link_target(path: str, link_target: str) -> str:
    """Absolute container path a symlink at ``path`` points to."""
    if posixpath.isabs(link_target):
        return posixpath.normpath(link_target)
    parent = posixpath.dirname(path.rstrip("/")) or "/"
    return posixpath.normpath(posixpath.join(parent, link_target))


def get_rebase_name(path: str, resolved_path: str) -> tuple[str, str]:
    """
    Carry the shape of ``path`` over to ``resolved_path``.

    Returns the adjusted resolved path and the name archive entries must be
    rebased to (empty when the base names already agree).
    """
    if (path.endswith("/.") or path == ".") and not resolved_path.endswith("/."):
        resolved_path += "/."
    if path.endswith("/") and not resolved_path.endswith("/"):
        resolved_path += "/"

    rebase_name = ""
    if posixpath.basename(path.rstrip("/")) != posixpath.basename(resolved_path.rstrip("/")):
        rebase_name = posixpath.basename(path.rstrip("/"))
    return resolved_path, rebase_name


def _rebase(name: str, old_base: str, new_base: str) -> str:
    if name == old_base or name.startswith(old_base + "/"):
        return new_base + name[len(old_base):]
    return name


def extract_archive(chunks: Iterable[bytes], dest_dir: str, src_base: str = "", rebase_name: str = "") -> list[str]:
    """
    Extract a daemon archive stream into ``dest_dir``.

    Returns the extracted member names (after rebasing).
    """
    os.makedirs(dest_dir, exist_ok=True)
    with tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_SIZE) as spool:
        for chunk in chunks:
            spool.write(chunk)
        spool.seek(0)
        with tarfile.open(fileobj=spool, mode="r:") as tar:
            members = tar.getmembers()
            if rebase_name and src_base:
                for member in members:
                    member.name = _rebase(member.name, src_base, rebase_name)
                    if member.islnk():
                        member.linkname = _rebase(member.linkname, src_base, rebase_name)
            tar.extractall(dest_dir, members=members, filter="tar")
    names = [m.name for m in members]
    logger.debug("Extracted archive | dest=%s | entries=%d", dest_dir, len(names))
    return names


def write_archive(chunks: Iterable[bytes], sink) -> int:
    """Copy a raw archive stream to ``sink`` (binary buffer of a text sink when present)."""
    target = getattr(sink, "buffer", sink)
    written = 0
    for chunk in chunks:
        target.write(chunk)
        written += len(chunk)
    if hasattr(target, "flush"):
        target.flush()
    return written

