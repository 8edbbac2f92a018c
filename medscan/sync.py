"""
表格同步模块 (Sync Bridge)
=========================

将台账记录以 JSON 数组 POST 到用户配置的 Google Apps Script Web App。
单次尽力发送：不重试、不退避，超时使用配置的传输默认值。
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx

from medscan.config import get_settings
from medscan.ir import PatientRecord, SourceType, SyncOutcome
from medscan.logger import get_logger

logger = get_logger(__name__)

WEBAPP_URL_PREFIX = "https://script.google.com/macros/s/"
WEBAPP_URL_SUFFIX = "/exec"


def is_valid_webapp_url(url: Optional[str]) -> bool:
    """仅做语法检查：固定前缀 + /exec 后缀且 httpx 可解析，不验证可达性与授权。"""
    if not url:
        return False
    if not (url.startswith(WEBAPP_URL_PREFIX) and url.endswith(WEBAPP_URL_SUFFIX)):
        return False
    try:
        httpx.URL(url)
    except httpx.InvalidURL:
        return False
    return True


def describe_url_problem(url: Optional[str]) -> Optional[str]:
    """返回面向用户的 URL 格式提示；URL 为空或合法时返回 None。"""
    if not url or is_valid_webapp_url(url):
        return None
    if "docs.google.com/spreadsheets" in url:
        return (
            "You pasted the Spreadsheet URL. Paste the 'Web App URL' "
            "from the Apps Script deployment window instead."
        )
    if url.startswith(WEBAPP_URL_PREFIX) and url.endswith(WEBAPP_URL_SUFFIX):
        return "Invalid URL. Remove spaces or other unsupported characters."
    return "Invalid format. URL should end in '/exec'"


def build_payload(records: Sequence[PatientRecord]) -> List[Dict[str, Any]]:
    """按同步端约定的字段构造 JSON 数组元素。"""
    return [
        {
            "timestamp": r.timestamp,
            "patient_name": r.patient_name,
            "uhid": r.uhid,
            "identifier_id": r.identifier_id,
            "attending_doctor": r.attending_doctor,
            "clinical_notes": r.clinical_notes,
            "source_type": r.source_type.value,
            "record_id": r.id,
        }
        for r in records
    ]


def connection_test_record() -> PatientRecord:
    """连接测试使用的占位记录。"""
    now = datetime.now(timezone.utc)
    return PatientRecord(
        id=f"test-{int(now.timestamp() * 1000)}",
        patient_name="TEST CONNECTION",
        identifier_id="SYNC-TEST-001",
        uhid="N/A",
        attending_doctor="SYSTEM",
        clinical_notes="This is a test row to verify Google Sheets connection.",
        source_type=SourceType.UNKNOWN,
        timestamp=now.isoformat(),
    )


class SyncBridge:
    """
    Webhook 转发器。

    dispatch() 返回三态结果：
        CONFIRMED  - 2xx 且响应体为 {"status": "success"}
        DISPATCHED - 2xx 但响应体无法确认写入
        FAILED     - URL 不合法、传输异常、非 2xx 或响应体报告 error
    """

    def __init__(self, client: Optional[httpx.Client] = None, timeout: Optional[float] = None):
        if client is None:
            if timeout is None:
                timeout = get_settings().SYNC_TIMEOUT
            client = httpx.Client(timeout=timeout, follow_redirects=True)
        self.client = client

    def close(self) -> None:
        self.client.close()

    def dispatch(self, url: str, records: Sequence[PatientRecord]) -> SyncOutcome:
        if not is_valid_webapp_url(url):
            logger.warning("Sync skipped: webhook URL is not a valid Web App URL")
            return SyncOutcome.FAILED
        if not records:
            logger.debug("Sync skipped: nothing to send")
            return SyncOutcome.DISPATCHED

        body = json.dumps(build_payload(records), ensure_ascii=False)
        try:
            response = self.client.post(
                url,
                content=body.encode("utf-8"),
                headers={"Content-Type": "text/plain;charset=utf-8", "Cache-Control": "no-cache"},
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.error("Sync error: %s", exc)
            return SyncOutcome.FAILED

        outcome = self._classify(response)
        logger.info(
            "Sync dispatch | records=%d | status=%d | outcome=%s",
            len(records),
            response.status_code,
            outcome.value,
        )
        return outcome

    @staticmethod
    def _classify(response: httpx.Response) -> SyncOutcome:
        if not response.is_success:
            return SyncOutcome.FAILED
        try:
            data = response.json()
        except ValueError:
            return SyncOutcome.DISPATCHED
        status = data.get("status") if isinstance(data, dict) else None
        if status == "success":
            return SyncOutcome.CONFIRMED
        if status == "error":
            logger.error("Sync endpoint reported error: %s", data.get("message"))
            return SyncOutcome.FAILED
        return SyncOutcome.DISPATCHED

    def test_connection(self, url: str) -> SyncOutcome:
        return self.dispatch(url, [connection_test_record()])
