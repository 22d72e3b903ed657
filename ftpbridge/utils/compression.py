"""
Compress local files and folders into temporary archives before upload
"""

import gzip
import logging
import os
import shutil
import tarfile
import tempfile
from dataclasses import dataclass

logger = logging.getLogger(__name__)

COMPRESSION_LEVEL = 9


@dataclass
class CompressionResult:
    """A temporary archive ready for upload. The caller owns compressed_path."""
    original_size: int
    compressed_size: int
    compressed_path: str
    compressed_name: str

    @property
    def compression_ratio(self) -> float:
        if self.original_size <= 0:
            return 1.0
        return self.compressed_size / self.original_size

    def to_dict(self) -> dict:
        return {
            'original_size': self.original_size,
            'compressed_size': self.compressed_size,
            'compression_ratio': self.compression_ratio,
            'compressed_path': self.compressed_path,
            'compressed_name': self.compressed_name,
        }


def _temp_archive_path(compressed_name: str) -> str:
    fd, path = tempfile.mkstemp(prefix='ftp-compress-', suffix=f"-{compressed_name}")
    os.close(fd)
    return path


def compress_file(file_path: str) -> CompressionResult:
    """Gzip a single file into <name>.gz in the temp directory."""
    compressed_name = f"{os.path.basename(file_path)}.gz"
    original_size = os.path.getsize(file_path)
    temp_path = _temp_archive_path(compressed_name)
    try:
        with open(file_path, 'rb') as src, gzip.open(temp_path, 'wb', compresslevel=COMPRESSION_LEVEL) as dst:
            shutil.copyfileobj(src, dst)
    except BaseException:
        os.remove(temp_path)
        raise

    result = CompressionResult(original_size, os.path.getsize(temp_path), temp_path, compressed_name)
    logger.info(f"Compressed {file_path} -> {temp_path} (ratio {result.compression_ratio:.2f})")
    return result


def compress_folder(folder_path: str) -> CompressionResult:
    """Tar and gzip a folder's contents (without the folder itself as prefix)."""
    folder_path = folder_path.rstrip(os.sep) or os.sep
    if not os.path.isdir(folder_path):
        raise NotADirectoryError(f"Not a directory: {folder_path}")
    compressed_name = f"{os.path.basename(folder_path)}.tar.gz"
    temp_path = _temp_archive_path(compressed_name)

    original_size = 0
    for root, _, files in os.walk(folder_path):
        for name in files:
            full_path = os.path.join(root, name)
            if not os.path.islink(full_path):
                original_size += os.path.getsize(full_path)

    try:
        with tarfile.open(temp_path, 'w:gz', compresslevel=COMPRESSION_LEVEL) as archive:
            for name in sorted(os.listdir(folder_path)):
                archive.add(os.path.join(folder_path, name), arcname=name)
    except BaseException:
        os.remove(temp_path)
        raise

    result = CompressionResult(original_size, os.path.getsize(temp_path), temp_path, compressed_name)
    logger.info(f"Compressed folder {folder_path} -> {temp_path} (ratio {result.compression_ratio:.2f})")
    return result


def compress_path(path: str) -> CompressionResult:
    """Dispatch on file vs folder."""
    if os.path.isdir(path):
        return compress_folder(path)
    return compress_file(path)
