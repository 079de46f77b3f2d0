from __future__ import annotations

import io
import logging
import os
import posixpath
import shutil
import tarfile
import tempfile
import zlib

from crate_index.errors import ExtractionFailedError
from crate_index.errors import IOFailureError

logger = logging.getLogger(__name__)

_COPY_CHUNK = 1 << 16


def crate_dir(data_dir: str, name: str, version: str) -> str:
    return os.path.join(data_dir, "crates", f"{name}-{version}")


def extract_archive(archive: bytes, dest_dir: str, strip_prefix: str | None = None) -> bool:
    """
    把 .crate（tar.gz）解压到 dest_dir。

    - 目标目录已存在：直接返回 False（幂等，不重复解压）
    - 先解压到同级的 staging 目录，再 rename 到位，避免留下半个目录
    - 只接受普通文件和目录；路径越界（绝对路径 / `..`）直接判定为损坏归档
    """
    if os.path.isdir(dest_dir):
        return False
    parent = os.path.dirname(dest_dir)
    try:
        os.makedirs(parent, exist_ok=True)
        staging = tempfile.mkdtemp(prefix=".staging-", dir=parent)
    except OSError as exc:
        logger.error(f"Cannot prepare extraction directory {parent}: {exc}")
        raise IOFailureError(f"Cannot prepare extraction directory {parent}: {exc}") from exc

    try:
        file_count = _extract_into(archive=archive, staging=staging, strip_prefix=strip_prefix)
    except (tarfile.TarError, EOFError, zlib.error) as exc:
        shutil.rmtree(staging, ignore_errors=True)
        logger.error(f"Corrupt archive for {dest_dir}: {exc}")
        raise ExtractionFailedError(f"Corrupt archive for {dest_dir}: {exc}") from exc
    except ExtractionFailedError:
        shutil.rmtree(staging, ignore_errors=True)
        raise
    except OSError as exc:
        shutil.rmtree(staging, ignore_errors=True)
        logger.error(f"Extraction I/O failure for {dest_dir}: {exc}")
        raise IOFailureError(f"Extraction I/O failure for {dest_dir}: {exc}") from exc

    try:
        os.replace(staging, dest_dir)
    except OSError as exc:
        shutil.rmtree(staging, ignore_errors=True)
        if os.path.isdir(dest_dir):
            # 另一个进程先完成了同一个版本的解压
            return False
        logger.error(f"Cannot move extracted tree into {dest_dir}: {exc}")
        raise IOFailureError(f"Cannot move extracted tree into {dest_dir}: {exc}") from exc
    logger.info(f"Extracted {file_count} files into {dest_dir}")
    return True


def _extract_into(archive: bytes, staging: str, strip_prefix: str | None) -> int:
    file_count = 0
    with tarfile.open(fileobj=io.BytesIO(archive), mode="r:gz") as tar:
        for member in tar:
            relative = _member_path(name=member.name, strip_prefix=strip_prefix)
            if relative is None:
                continue
            target = os.path.join(staging, *relative.split("/"))
            if not os.path.realpath(target).startswith(os.path.realpath(staging) + os.sep):
                raise ExtractionFailedError(f"Archive member escapes destination: {member.name}")
            if member.isdir():
                os.makedirs(target, exist_ok=True)
                continue
            if not member.isfile():
                continue
            handle = tar.extractfile(member)
            if handle is None:
                continue
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with handle, open(target, "wb") as out:
                shutil.copyfileobj(handle, out, _COPY_CHUNK)
            file_count += 1
    return file_count


def _member_path(name: str, strip_prefix: str | None) -> str | None:
    if name.startswith("/") or "\\" in name:
        raise ExtractionFailedError(f"Unsafe archive member path: {name}")
    normalized = posixpath.normpath(name)
    if normalized == ".":
        return None
    if normalized == ".." or normalized.startswith("../"):
        raise ExtractionFailedError(f"Unsafe archive member path: {name}")
    if strip_prefix:
        if normalized == strip_prefix:
            return None
        if normalized.startswith(strip_prefix + "/"):
            normalized = normalized[len(strip_prefix) + 1 :]
    return normalized
