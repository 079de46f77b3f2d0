from __future__ import annotations

import os

SKIPPED_DIRS = {".git", "target", ".cargo", ".github"}


def scan_source_files(source_root: str, allowed_extensions: set[str], max_bytes: int) -> list[str]:
    """返回 source_root 下需要解析的文件（posix 相对路径，排序后保证顺序稳定）。"""
    if max_bytes <= 0:
        raise ValueError("max_bytes must be > 0")
    files: list[str] = []
    for root, dirs, filenames in os.walk(source_root):
        dirs[:] = sorted(d for d in dirs if d not in SKIPPED_DIRS)
        for name in filenames:
            path = os.path.join(root, name)
            ext = os.path.splitext(name)[1].lower()
            if ext not in allowed_extensions:
                continue
            if os.path.islink(path):
                continue
            try:
                size = os.path.getsize(path)
            except OSError:
                continue
            if size > max_bytes:
                continue
            files.append(os.path.relpath(path, source_root).replace(os.sep, "/"))
    return sorted(files)


def list_tree_files(source_root: str, limit: int) -> list[str]:
    """列出目录下的文件（用于“文件不存在”时给出提示）。"""
    found: list[str] = []
    for root, dirs, filenames in os.walk(source_root):
        dirs[:] = sorted(d for d in dirs if d not in SKIPPED_DIRS)
        for name in sorted(filenames):
            found.append(os.path.relpath(os.path.join(root, name), source_root).replace(os.sep, "/"))
            if len(found) >= limit:
                return found
    return found
