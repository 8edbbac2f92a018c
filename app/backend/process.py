"""
后端处理模块 (Backend Process Module)
====================================

封装三个前端（API / CLI / Streamlit）共用的流程：
读取图片 → 导入队列识别 → 汇总结果；以及导出文件写出。
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from medscan.config import get_settings
from medscan.export import write_export
from medscan.extract.queue_runner import BatchReport, ImageUpload
from medscan.ir import PatientRecord
from medscan.logger import get_logger
from medscan.pipeline import AppState

logger = get_logger(__name__)

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".bmp", ".webp", ".heic"}


def ensure_output_dir(output_dir: str) -> Path:
    """确保输出目录存在，不存在则创建。"""
    output_path = Path(output_dir).resolve()
    output_path.mkdir(parents=True, exist_ok=True)
    return output_path


def collect_image_paths(inputs: Sequence[str]) -> Tuple[List[Path], List[str]]:
    """
    展开输入路径：目录递归收集图片文件。

    返回 (图片路径列表, 无法使用的输入列表)。
    """
    collected: List[Path] = []
    skipped: List[str] = []
    for raw in inputs:
        path = Path(raw).expanduser()
        if path.is_dir():
            collected.extend(
                sorted(p for p in path.rglob("*") if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS)
            )
        elif path.is_file() and path.suffix.lower() in IMAGE_EXTENSIONS:
            collected.append(path)
        else:
            skipped.append(raw)
    return collected, skipped


def validate_image_size(filename: str, size: int, max_bytes: Optional[int] = None) -> bool:
    """校验单张图片大小不超过上限。"""
    limit = max_bytes if max_bytes is not None else get_settings().MAX_IMAGE_BYTES
    if size > limit:
        logger.warning("Image %s rejected: size %d bytes exceeds limit %d", filename, size, limit)
        return False
    return True


def load_uploads(paths: Sequence[Path], max_bytes: Optional[int] = None) -> Tuple[List[ImageUpload], List[str]]:
    """读取图片文件为 ImageUpload；超限文件被跳过。"""
    uploads: List[ImageUpload] = []
    rejected: List[str] = []
    for path in paths:
        payload = path.read_bytes()
        if not validate_image_size(path.name, len(payload), max_bytes):
            rejected.append(str(path))
            continue
        uploads.append(ImageUpload(filename=path.name, payload=payload))
    return uploads, rejected


def summarize_batch(state: AppState, report: BatchReport) -> Dict[str, Any]:
    """将一次批处理结果转为可序列化字典。"""
    records: List[PatientRecord] = [r for r in (state.ledger.get(i) for i in report.record_ids) if r]
    batch_ids = set(report.entry_ids)
    entries = [e for e in state.queue.entries if e.entry_id in batch_ids] if state.queue is not None else []
    return {
        "processed": report.processed,
        "completed": report.completed,
        "failed": report.failed,
        "warning": report.warning,
        "records": [r.model_dump(mode="json") for r in records],
        "entries": [e.model_dump(mode="json") for e in entries],
    }


def process_uploads(state: AppState, uploads: Sequence[ImageUpload]) -> Dict[str, Any]:
    report = state.scan(uploads)
    return summarize_batch(state, report)


def export_records(state: AppState, fmt: str, output_dir: str, search: Optional[str] = None) -> Optional[Path]:
    """导出台账（或搜索结果子集）到 output_dir。"""
    records = state.search(search)
    return write_export(records, fmt, ensure_output_dir(output_dir))
