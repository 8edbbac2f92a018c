"""
键值存储模块 (Key-Value Blob Store)
==================================

以目录为载体的字符串键值存储：每个键对应一个文件，值为序列化后的字符串。
写入使用临时文件 + 原子替换，避免中途崩溃留下半截数据。
"""

import os
import re
import tempfile
from pathlib import Path
from typing import Optional, Union

from medscan.logger import get_logger

logger = get_logger(__name__)

RECORDS_KEY = "medscan_records"
SYNC_CONFIG_KEY = "medscan_sync_config"

_VALID_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


class BlobStore:
    """
    目录型键值存储。

    get() 对不存在的键返回 None；set() 无条件整体覆盖。
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)
        logger.debug("BlobStore opened at %s", self.root)

    def _path_for(self, key: str) -> Path:
        if not _VALID_KEY.match(key or ""):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.root / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path_for(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        """原子写入：先写同目录临时文件，再 replace 到目标路径。"""
        path = self._path_for(key)
        fd, temp_name = tempfile.mkstemp(dir=self.root, prefix=f".{path.name}.", suffix=".tmp")
        temp_path = Path(temp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(value)
                handle.flush()
                os.fsync(handle.fileno())
            temp_path.replace(path)
        except Exception:
            temp_path.unlink(missing_ok=True)
            raise
        logger.debug("BlobStore wrote %s (%d chars)", key, len(value))
