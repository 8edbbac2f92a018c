"""
应用状态模块 (Application State)
===============================

将存储、台账、同步配置、同步桥和导入队列组装成一个显式的状态对象，
由 API / CLI / Streamlit 注入使用。每次变更后立即写回存储。

流程: 导入队列 -> 台账插入 -> （自动同步时）同步桥 -> 按需导出
"""

import json
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Union

from pydantic import ValidationError

from medscan.config import get_settings
from medscan.extract.queue_runner import BatchReport, ImageUpload, IngestionQueue
from medscan.extractors.base import BaseExtractor
from medscan.extractors.image_extractor import ImageExtractor
from medscan.ir import ExtractionResult, PatientRecord, SyncConfig, SyncOutcome
from medscan.ledger import Ledger
from medscan.llm import get_llm_client
from medscan.logger import get_logger
from medscan.storage import SYNC_CONFIG_KEY, BlobStore
from medscan.sync import SyncBridge, describe_url_problem, is_valid_webapp_url

logger = get_logger(__name__)


class SyncNotConfigured(Exception):
    """Webhook URL 缺失或格式不合法时抛出，调用方应引导用户去配置。"""


def load_sync_config(store: BlobStore) -> SyncConfig:
    """读取同步配置；缺失返回默认值，解析失败记录错误并重置为默认值。"""
    raw = store.get(SYNC_CONFIG_KEY)
    if raw is None:
        return SyncConfig()
    try:
        return SyncConfig.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as exc:
        logger.error("Failed to parse saved sync config (%s); using defaults", exc)
        return SyncConfig()


class AppState:
    """
    会话级应用状态。

    属性:
        store: 键值存储
        ledger: 记录台账
        sync_config: 同步配置
        bridge: Webhook 同步桥
        queue: 图片导入队列（extractor 提供时创建）
    """

    def __init__(
        self,
        store: BlobStore,
        extractor: Optional[BaseExtractor] = None,
        bridge: Optional[SyncBridge] = None,
        display_delay: float = 2.0,
    ):
        self.store = store
        self.ledger = Ledger.load(store)
        self.sync_config = load_sync_config(store)
        self._bridge = bridge
        self.queue: Optional[IngestionQueue] = None
        if extractor is not None:
            self.queue = IngestionQueue(extractor, self.handle_extracted, display_delay=display_delay)

    @property
    def bridge(self) -> SyncBridge:
        if self._bridge is None:
            self._bridge = SyncBridge()
        return self._bridge

    # -- ingestion -----------------------------------------------------------

    def handle_extracted(self, result: ExtractionResult) -> PatientRecord:
        """插入新记录；开启自动同步时立即尝试转发，转发失败不影响插入。"""
        record = self.ledger.insert(result)
        if self.sync_config.auto_sync and self.is_sync_configured():
            try:
                outcome = self.bridge.dispatch(self.sync_config.webhook_url, [record])
                if outcome.delivered:
                    self.ledger.mark_synced([record.id])
                else:
                    logger.warning("Auto-sync failed for record %s", record.id)
            except Exception as exc:
                logger.warning("Auto-sync error for record %s: %s", record.id, exc)
        return record

    def scan(self, images: Iterable[ImageUpload]) -> BatchReport:
        if self.queue is None:
            raise RuntimeError("AppState was created without an extractor")
        self.queue.add(images)
        return self.queue.run()

    # -- ledger --------------------------------------------------------------

    def search(self, term: Optional[str] = None) -> List[PatientRecord]:
        return self.ledger.query(term)

    def delete_record(self, record_id: str, confirm) -> bool:
        return self.ledger.delete(record_id, confirm)

    # -- sync ----------------------------------------------------------------

    def is_sync_configured(self) -> bool:
        return is_valid_webapp_url(self.sync_config.webhook_url)

    def update_sync_config(self, webhook_url: Optional[str] = None, auto_sync: Optional[bool] = None) -> SyncConfig:
        """
        更新并持久化同步配置。

        非空但格式不合法的 URL 会抛出 ValueError（附带用户提示）。
        """
        updates = {}
        if webhook_url is not None:
            webhook_url = webhook_url.strip()
            problem = describe_url_problem(webhook_url)
            if problem:
                raise ValueError(problem)
            updates["webhook_url"] = webhook_url
        if auto_sync is not None:
            updates["auto_sync"] = bool(auto_sync)
        self.sync_config = self.sync_config.model_copy(update=updates)
        self.store.set(SYNC_CONFIG_KEY, self.sync_config.model_dump_json())
        logger.info(
            "Sync config saved | configured=%s | auto_sync=%s",
            self.is_sync_configured(),
            self.sync_config.auto_sync,
        )
        return self.sync_config

    def sync_records(self, record_ids: Optional[Sequence[str]] = None) -> SyncOutcome:
        """
        转发指定记录（默认全部未同步记录）。

        仅当结果为已送达时才标记 synced；失败时记录保持不变，可安全重试。
        """
        if not self.is_sync_configured():
            raise SyncNotConfigured("Configure a Google Apps Script Web App URL before syncing")
        if record_ids is None:
            records = self.ledger.unsynced()
        else:
            wanted = set(record_ids)
            records = [r for r in self.ledger.records if r.id in wanted]
        outcome = self.bridge.dispatch(self.sync_config.webhook_url, records)
        if outcome.delivered and records:
            self.ledger.mark_synced([r.id for r in records])
        return outcome

    def test_sync_connection(self) -> SyncOutcome:
        if not self.is_sync_configured():
            raise SyncNotConfigured("Configure a Google Apps Script Web App URL before testing")
        return self.bridge.test_connection(self.sync_config.webhook_url)


def build_app_state(
    storage_dir: Optional[Union[str, Path]] = None,
    with_extractor: bool = True,
) -> AppState:
    """按配置构造 AppState；with_extractor 为 False 时不初始化视觉模型客户端。"""
    settings = get_settings()
    store = BlobStore(storage_dir or settings.STORAGE_DIR)
    extractor = None
    if with_extractor:
        extractor = ImageExtractor(get_llm_client())
    return AppState(store, extractor=extractor, display_delay=settings.QUEUE_DISPLAY_DELAY_SECONDS)
