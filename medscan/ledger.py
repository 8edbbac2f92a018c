"""
台账模块 (Ledger Module)
=======================

按时间倒序保存识别得到的临床记录，每次变更后整体写回键值存储。
"""

import json
from datetime import date
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Union

from pydantic import ValidationError

from medscan.ir import ExtractionResult, PatientRecord, SourceType
from medscan.logger import get_logger
from medscan.storage import RECORDS_KEY, BlobStore

logger = get_logger(__name__)

# 参与搜索的字段
SEARCH_FIELDS = ("patient_name", "identifier_id", "uhid", "attending_doctor")

Confirmation = Union[bool, Callable[[], bool]]


class Ledger:
    """
    有序记录集合，最新的记录在最前。

    仅 id 唯一；同一 UHID 的重复记录允许存在。
    """

    def __init__(self, store: BlobStore, key: str = RECORDS_KEY):
        self.store = store
        self.key = key
        self._records: List[PatientRecord] = []

    # -- persistence ---------------------------------------------------------

    @classmethod
    def load(cls, store: BlobStore, key: str = RECORDS_KEY) -> "Ledger":
        """
        从存储加载台账。

        键不存在时返回空台账；内容无法解析时记录错误并重置为空，不抛出。
        """
        ledger = cls(store, key=key)
        raw = store.get(key)
        if raw is None:
            return ledger
        try:
            data = json.loads(raw)
            if not isinstance(data, list):
                raise ValueError(f"expected a JSON array, got {type(data).__name__}")
            ledger._records = [PatientRecord.model_validate(item) for item in data]
        except (ValueError, ValidationError) as exc:
            logger.error("Failed to parse saved records (%s); starting with an empty ledger", exc)
            ledger._records = []
        logger.info("Ledger loaded: %d records", len(ledger._records))
        return ledger

    def _commit(self, records: List[PatientRecord]) -> None:
        """先写存储，成功后再替换内存中的列表；写入失败时内存保持不变。"""
        payload = json.dumps([r.model_dump(mode="json") for r in records], ensure_ascii=False)
        self.store.set(self.key, payload)
        self._records = records

    # -- mutations -----------------------------------------------------------

    def insert(self, result: ExtractionResult) -> PatientRecord:
        """为识别结果生成新记录并置于最前，随后持久化。"""
        record = PatientRecord.from_extraction(result)
        self._commit([record] + self._records)
        logger.info("Ledger insert: id=%s source=%s", record.id, record.source_type.value)
        return record

    def delete(self, record_id: str, confirm: Confirmation) -> bool:
        """
        删除记录，必须显式确认。

        confirm 可以是布尔值或无参回调；未确认或记录不存在时不做任何修改。
        返回是否真正删除了记录。
        """
        confirmed = confirm() if callable(confirm) else bool(confirm)
        if not confirmed:
            logger.debug("Delete of %s not confirmed", record_id)
            return False
        remaining = [r for r in self._records if r.id != record_id]
        if len(remaining) == len(self._records):
            return False
        self._commit(remaining)
        logger.info("Ledger delete: id=%s", record_id)
        return True

    def mark_synced(self, record_ids: Iterable[str]) -> int:
        """将匹配记录标记为已同步，返回实际变化的条数。"""
        wanted = set(record_ids)
        if not wanted:
            return 0
        changed = 0
        updated: List[PatientRecord] = []
        for record in self._records:
            if record.id in wanted and not record.synced:
                record = record.as_synced()
                changed += 1
            updated.append(record)
        if changed:
            self._commit(updated)
        logger.info("Ledger mark_synced: %d of %d requested", changed, len(wanted))
        return changed

    # -- queries -------------------------------------------------------------

    def query(self, search_term: Optional[str] = None) -> List[PatientRecord]:
        """按姓名、标识号、UHID、医生做大小写不敏感的子串匹配，不修改台账。"""
        needle = (search_term or "").lower()
        if not needle:
            return list(self._records)
        return [
            r for r in self._records
            if any(needle in getattr(r, field).lower() for field in SEARCH_FIELDS)
        ]

    def get(self, record_id: str) -> Optional[PatientRecord]:
        for record in self._records:
            if record.id == record_id:
                return record
        return None

    def unsynced(self) -> List[PatientRecord]:
        return [r for r in self._records if not r.synced]

    @property
    def records(self) -> List[PatientRecord]:
        return list(self._records)

    def stats(self, today: Optional[date] = None) -> Dict[str, int]:
        """仪表盘统计：总数、今日新增、标签数、白板数、未同步数。"""
        today = today or date.today()
        today_count = 0
        for record in self._records:
            try:
                created = record.created_at()
            except ValueError:
                continue
            if created.tzinfo is not None:
                created = created.astimezone()
            if created.date() == today:
                today_count += 1
        return {
            "total": len(self._records),
            "today": today_count,
            "labels": sum(1 for r in self._records if r.source_type is SourceType.LABEL),
            "whiteboards": sum(1 for r in self._records if r.source_type is SourceType.WHITEBOARD),
            "unsynced": len(self.unsynced()),
        }

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[PatientRecord]:
        return iter(list(self._records))
