from __future__ import annotations

import logging
import re
import time
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Iterator

import requests

from testflight_pm.config import AppStoreSettings, ConfigError, HttpSettings
from testflight_pm.models import (
    CrashData,
    CrashLog,
    DeviceInfo,
    FeedbackRecord,
    ScreenshotData,
    ScreenshotImage,
)
from testflight_pm.utils.datetime_utils import parse_datetime_utc, utcnow
from testflight_pm.utils.http_utils import USER_AGENT, ApiError, send_with_retries

from .auth import AppStoreConnectAuth
from .base import Source

logger = logging.getLogger(__name__)

CRASH_SUBMISSIONS = "betaFeedbackCrashSubmissions"
SCREENSHOT_SUBMISSIONS = "betaFeedbackScreenshotSubmissions"

_EXCEPTION_TYPE = re.compile(r"^Exception Type:\s*(.+?)\s*$", re.MULTILINE)
_MAX_TRACE_CHARS = 8000


class TestFlightSource(Source):
    """Crash and screenshot feedback from the App Store Connect API."""

    __test__ = False

    def __init__(
        self,
        settings: AppStoreSettings,
        http: HttpSettings,
        *,
        auth: AppStoreConnectAuth | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(source_id="testflight")
        if not settings.app_id and not settings.bundle_id:
            raise ConfigError("TestFlight source needs app_id or bundle_id")

        self.settings = settings
        self.http = http
        self.auth = auth or AppStoreConnectAuth(settings)
        self._sleep = sleep
        self._app_id: str | None = settings.app_id or None
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json", "User-Agent": USER_AGENT})

    def fetch(self, since: datetime, until: datetime) -> list[FeedbackRecord]:
        app_id = self.resolve_app_id()
        records: list[FeedbackRecord] = []

        for collection, convert in (
            (CRASH_SUBMISSIONS, crash_resource_to_record),
            (SCREENSHOT_SUBMISSIONS, screenshot_resource_to_record),
        ):
            fetched = self._collect(f"/apps/{app_id}/{collection}", convert, since, until)
            logger.info("Fetched %d %s in window", len(fetched), collection)
            records.extend(fetched)

        for index, record in enumerate(records):
            if record.is_crash:
                records[index] = self._with_crash_log(record)

        records.sort(key=lambda item: item.submitted_at, reverse=True)
        return records

    def resolve_app_id(self) -> str:
        if self._app_id:
            return self._app_id

        payload = self._get_json(
            f"{self.settings.api_url}/apps",
            params={"filter[bundleId]": self.settings.bundle_id, "limit": 1},
        )
        apps = payload.get("data") or []
        if not apps:
            raise ConfigError(f"No App Store Connect app found for bundle id {self.settings.bundle_id!r}")
        self._app_id = str(apps[0]["id"])
        logger.info("Resolved bundle id %s to app id %s", self.settings.bundle_id, self._app_id)
        return self._app_id

    def _collect(
        self,
        path: str,
        convert: Callable[[dict[str, Any], str], FeedbackRecord | None],
        since: datetime,
        until: datetime,
    ) -> list[FeedbackRecord]:
        records: list[FeedbackRecord] = []
        for page in self._pages(path, {"limit": self.settings.page_limit, "sort": "-createdDate"}):
            reached_older = False
            for resource in page:
                record = convert(resource, self.settings.bundle_id)
                if record is None:
                    continue
                if record.submitted_at < since:
                    reached_older = True
                    continue
                if record.submitted_at < until:
                    records.append(record)
            # Pages are sorted newest first, so nothing further can be in the window.
            if reached_older:
                break
        return records

    def _pages(self, path: str, params: dict[str, Any]) -> Iterator[list[dict[str, Any]]]:
        url: str | None = f"{self.settings.api_url}{path}"
        query: dict[str, Any] | None = params
        while url:
            payload = self._get_json(url, params=query)
            data = payload.get("data") or []
            yield [item for item in data if isinstance(item, dict)]
            url = (payload.get("links") or {}).get("next")
            query = None

    def _with_crash_log(self, record: FeedbackRecord) -> FeedbackRecord:
        crash = record.crash_data
        if crash is None:
            return record
        try:
            payload = self._get_json(f"{self.settings.api_url}/{CRASH_SUBMISSIONS}/{record.id}/crashLog")
            log_text = self._crash_log_text(payload.get("data") or {})
        except (ApiError, requests.RequestException, ValueError) as exc:
            logger.warning("Could not fetch crash log for %s: %s", record.id, exc)
            return record

        if not log_text:
            return record

        exception_type = crash.exception_type or extract_exception_type(log_text)
        trace = crash.trace or log_text[:_MAX_TRACE_CHARS]
        return replace(record, crash_data=replace(crash, trace=trace, exception_type=exception_type))

    def _crash_log_text(self, resource: dict[str, Any]) -> str | None:
        attributes = resource.get("attributes") or {}
        if attributes.get("logText"):
            return str(attributes["logText"])

        download_url = attributes.get("downloadUrl")
        if not download_url:
            return None
        expires_at = parse_datetime_utc(attributes.get("expiresAt"))
        if expires_at is not None and expires_at <= utcnow():
            logger.warning("Crash log download URL expired at %s", expires_at)
            return None

        # Pre-signed download URLs must not carry the API bearer token.
        response = send_with_retries(
            self.session,
            "GET",
            download_url,
            retries=self.http.retries,
            retry_delay_seconds=self.http.retry_delay_ms / 1000,
            timeout_seconds=self.http.timeout_seconds,
            jitter=True,
            sleep=self._sleep,
        )
        return response.text

    def _get_json(self, url: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            response = self._send(url, params)
        except ApiError as exc:
            if exc.status != 401:
                raise
            logger.info("App Store Connect rejected the token; refreshing and retrying once")
            self.auth.refresh_token()
            response = self._send(url, params)
        return response.json()

    def _send(self, url: str, params: dict[str, Any] | None) -> requests.Response:
        return send_with_retries(
            self.session,
            "GET",
            url,
            retries=self.http.retries,
            retry_delay_seconds=self.http.retry_delay_ms / 1000,
            timeout_seconds=self.http.timeout_seconds,
            jitter=True,
            sleep=self._sleep,
            params=params,
            headers={"Authorization": f"Bearer {self.auth.get_token()}"},
        )


def extract_exception_type(log_text: str) -> str | None:
    match = _EXCEPTION_TYPE.search(log_text)
    return match.group(1) if match else None


def crash_resource_to_record(resource: dict[str, Any], default_bundle_id: str = "") -> FeedbackRecord | None:
    base = _base_fields(resource, default_bundle_id)
    if base is None:
        return None
    attributes = resource.get("attributes") or {}

    logs = tuple(
        CrashLog(url=str(log["url"]), expires_at=parse_datetime_utc(log.get("expiresAt")))
        for log in attributes.get("crashLogs") or []
        if isinstance(log, dict) and log.get("url")
    )
    trace = str(attributes.get("crashTrace") or "")
    crash = CrashData(
        trace=trace,
        crash_type=str(attributes.get("crashType") or "crash"),
        exception_type=attributes.get("exceptionType") or extract_exception_type(trace),
        exception_message=attributes.get("exceptionMessage") or attributes.get("comment"),
        logs=logs,
    )
    return FeedbackRecord(type="crash", crash_data=crash, **base)


def screenshot_resource_to_record(resource: dict[str, Any], default_bundle_id: str = "") -> FeedbackRecord | None:
    base = _base_fields(resource, default_bundle_id)
    if base is None:
        return None
    attributes = resource.get("attributes") or {}

    images: list[ScreenshotImage] = []
    for index, image in enumerate(attributes.get("screenshots") or [], start=1):
        if not isinstance(image, dict) or not image.get("url"):
            continue
        images.append(
            ScreenshotImage(
                url=str(image["url"]),
                file_name=str(image.get("fileName") or f"screenshot-{index}.png"),
                file_size=int(image.get("fileSize") or 0),
                expires_at=parse_datetime_utc(image.get("expiresAt") or image.get("expirationDate")),
            )
        )

    text = attributes.get("feedbackText") or attributes.get("comment")
    screenshot = ScreenshotData(
        text=str(text) if text else None,
        images=tuple(images),
        annotation_count=len(attributes.get("annotations") or []),
    )
    return FeedbackRecord(type="screenshot", screenshot_data=screenshot, **base)


def _base_fields(resource: dict[str, Any], default_bundle_id: str) -> dict[str, Any] | None:
    feedback_id = resource.get("id")
    attributes = resource.get("attributes") or {}
    submitted_at = parse_datetime_utc(attributes.get("submittedAt") or attributes.get("createdDate"))
    if not feedback_id or submitted_at is None:
        logger.warning("Skipping feedback resource without id or submission time: %r", feedback_id)
        return None

    return {
        "id": str(feedback_id),
        "submitted_at": submitted_at,
        "app_version": str(attributes.get("appVersion") or "unknown"),
        "build_number": str(attributes.get("buildNumber") or "unknown"),
        "device_info": DeviceInfo(
            family=str(attributes.get("deviceFamily") or "unknown"),
            model=str(attributes.get("deviceModel") or "unknown"),
            os_version=str(attributes.get("osVersion") or "unknown"),
            locale=str(attributes.get("locale") or "unknown"),
        ),
        "bundle_id": str(attributes.get("bundleId") or attributes.get("buildBundleId") or default_bundle_id),
        "tester_email": attributes.get("email"),
    }
