"""
数据模型模块 (Data Model Module)
===============================

定义识别、台账、同步与导入队列中的核心数据结构：
ExtractionResult、PatientRecord、SyncConfig、QueueEntry 等。
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SourceType(str, Enum):
    """图片来源类型：患者标签、病区白板或无法判断。"""
    LABEL = "label"
    WHITEBOARD = "whiteboard"
    UNKNOWN = "unknown"

    @classmethod
    def coerce(cls, value: object) -> "SourceType":
        """将模型返回的任意值归一为枚举，无法识别时返回 UNKNOWN。"""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value == text:
                return member
        return cls.UNKNOWN


# 识别结果与记录共享的文本字段，顺序即同步/导出的字段顺序
TEXT_FIELDS = ("patient_name", "identifier_id", "uhid", "attending_doctor", "clinical_notes")


class ExtractionResult(BaseModel):
    """
    视觉模型识别结果。

    所有文本字段缺失时默认为空字符串，source_type 默认 unknown。
    """
    model_config = ConfigDict(frozen=True)

    patient_name: str = ""
    identifier_id: str = ""
    uhid: str = ""
    attending_doctor: str = ""
    clinical_notes: str = ""
    source_type: SourceType = SourceType.UNKNOWN

    @field_validator(*TEXT_FIELDS, mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        if v is None:
            return ""
        return str(v).strip()

    @field_validator("source_type", mode="before")
    @classmethod
    def _coerce_source_type(cls, v):
        return SourceType.coerce(v)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class PatientRecord(BaseModel):
    """
    台账中的一条临床记录。

    属性:
        id: 插入台账时生成的唯一标识
        patient_name / identifier_id / uhid / attending_doctor / clinical_notes: 文本字段
        source_type: 来源类型
        timestamp: 创建时间（ISO-8601），创建后不可变
        synced: 是否已确认转发到表格 Webhook

    记录创建后不可变，唯一允许变化的 synced 通过 model_copy 生成新对象。
    """
    model_config = ConfigDict(frozen=True)

    id: str
    patient_name: str = ""
    identifier_id: str = ""
    uhid: str = ""
    attending_doctor: str = ""
    clinical_notes: str = ""
    source_type: SourceType = SourceType.UNKNOWN
    timestamp: str
    synced: bool = False

    @classmethod
    def from_extraction(cls, result: ExtractionResult) -> "PatientRecord":
        """根据识别结果创建新记录：生成 id 与时间戳，synced=False。"""
        return cls(
            id=str(uuid4()),
            timestamp=_utc_now_iso(),
            synced=False,
            **result.model_dump(),
        )

    def as_synced(self) -> "PatientRecord":
        return self.model_copy(update={"synced": True})

    def created_at(self) -> datetime:
        return datetime.fromisoformat(self.timestamp)


class SyncConfig(BaseModel):
    """表格同步配置，进程内单例。"""
    webhook_url: str = ""
    auto_sync: bool = False


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


# 允许的状态迁移: pending -> processing -> completed | error
QUEUE_TRANSITIONS = {
    QueueStatus.PENDING: {QueueStatus.PROCESSING},
    QueueStatus.PROCESSING: {QueueStatus.COMPLETED, QueueStatus.ERROR},
    QueueStatus.COMPLETED: set(),
    QueueStatus.ERROR: set(),
}


class QueueEntry(BaseModel):
    """
    导入队列中的一张图片。

    payload 为图片原始字节，不参与序列化输出。
    """
    entry_id: str = Field(default_factory=lambda: uuid4().hex)
    filename: str
    mime_type: str = "image/jpeg"
    payload: bytes = Field(default=b"", exclude=True, repr=False)
    status: QueueStatus = QueueStatus.PENDING
    error: Optional[str] = None
    record_id: Optional[str] = None
    finished_at: Optional[float] = None

    def transition(self, new_status: QueueStatus) -> None:
        """按状态机迁移，非法迁移抛出 ValueError。"""
        if new_status not in QUEUE_TRANSITIONS[self.status]:
            raise ValueError(
                f"Illegal queue transition for {self.entry_id}: {self.status.value} -> {new_status.value}"
            )
        self.status = new_status


class SyncOutcome(str, Enum):
    """
    同步结果三态。

    CONFIRMED: 远端返回成功状态
    DISPATCHED: 请求已送达但无法确认是否写入
    FAILED: 未发送、传输异常或远端报错
    """
    CONFIRMED = "confirmed"
    DISPATCHED = "dispatched"
    FAILED = "failed"

    @property
    def delivered(self) -> bool:
        return self is not SyncOutcome.FAILED
