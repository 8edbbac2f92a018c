"""
导出模块 (Export Module)
=======================

将台账（或其子集）序列化为结构化 JSON 或平面 CSV，供下载。
"""

import csv
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence, Union

import pandas as pd

from medscan.ir import PatientRecord
from medscan.logger import get_logger

logger = get_logger(__name__)

EXPORT_FORMATS = ("json", "csv")

# 固定列顺序
CSV_COLUMNS = [
    "ID",
    "Patient Name",
    "UHID",
    "Identifier ID",
    "Attending Doctor",
    "Clinical Notes",
    "Source Type",
    "Timestamp",
    "Synced",
]

MIME_TYPES = {
    "json": "application/json",
    "csv": "text/csv",
}


def to_json(records: Sequence[PatientRecord]) -> str:
    return json.dumps([r.model_dump(mode="json") for r in records], indent=2, ensure_ascii=False)


def from_json(text: str) -> List[PatientRecord]:
    """解析 to_json 的输出，逐字段还原记录。"""
    data = json.loads(text)
    if not isinstance(data, list):
        raise ValueError("Structured export must be a JSON array")
    return [PatientRecord.model_validate(item) for item in data]


def to_dataframe(records: Sequence[PatientRecord]) -> pd.DataFrame:
    rows = [
        [
            r.id,
            r.patient_name,
            r.uhid,
            r.identifier_id,
            r.attending_doctor,
            r.clinical_notes,
            r.source_type.value,
            r.timestamp,
            "true" if r.synced else "false",
        ]
        for r in records
    ]
    return pd.DataFrame(rows, columns=CSV_COLUMNS, dtype=str)


def to_csv(records: Sequence[PatientRecord]) -> str:
    """
    生成 CSV 文本：表头 + 每条记录一行。

    所有字段加双引号，字段内的双引号按 CSV 规则加倍；空输入只输出表头。
    """
    return to_dataframe(records).to_csv(index=False, quoting=csv.QUOTE_ALL, lineterminator="\n")


def render(records: Sequence[PatientRecord], fmt: str) -> str:
    if fmt == "json":
        return to_json(records)
    if fmt == "csv":
        return to_csv(records)
    raise ValueError(f"Unsupported export format: {fmt!r} (expected one of {EXPORT_FORMATS})")


def export_filename(fmt: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    stamp = now.isoformat().replace(":", "-")
    return f"medical_records_{stamp}.{fmt}"


def write_export(
    records: Sequence[PatientRecord],
    fmt: str,
    output_dir: Union[str, Path],
    now: Optional[datetime] = None,
) -> Optional[Path]:
    """
    写出下载文件并返回路径。

    CSV 对显式为空的输入不产生文件，返回 None；JSON 总是写出（空数组）。
    """
    if fmt == "csv" and not records:
        logger.info("CSV export skipped: no records")
        return None
    content = render(records, fmt)
    out_dir = Path(output_dir).expanduser()
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / export_filename(fmt, now)
    path.write_text(content, encoding="utf-8")
    logger.info("Exported %d records to %s", len(records), path)
    return path
