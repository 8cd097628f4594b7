"""
Management REST API client.

Thin adapter between the cloud's management endpoint and the engine's
``start() -> handle`` / ``get_status(handle)`` contract.

Usage:
    from imagebuilder.provisioning.client import ManagementClient

    client = ManagementClient.from_settings(subscription_id="...")
    executor = AsyncOperationExecutor(client.get_operation_status)
    executor.execute(lambda: client.start_operation("DELETE", f"/services/hostedservices/{name}"))

Connection errors and timeouts are not wrapped: the executor's network
retry loop classifies the raw ``requests`` exceptions.
"""

import json
import logging
from typing import Any, Dict, Optional, Tuple
from xml.etree.ElementTree import Element

import defusedxml.ElementTree as ET
import requests

from imagebuilder.errors import RemoteError
from imagebuilder.provisioning.operations import OperationHandle, OperationState, OperationStatus
from imagebuilder.settings import Settings, get_settings

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-ms-request-id"


def _strip_ns(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _xml_children(element: Element) -> Dict[str, Element]:
    return {_strip_ns(child.tag): child for child in element}


def parse_error_body(body: str) -> Tuple[Optional[str], str]:
    """
    Extract (code, message) from an error response body.

    Understands ``{"error": {"code", "message"}}``, flat ``{"code", "message"}``
    and ``<Error><Code/><Message/></Error>``. Returns (None, body) if none match.
    """
    text = (body or "").strip()
    if not text:
        return None, ""

    if text.startswith("{"):
        try:
            data = json.loads(text)
        except ValueError:
            return None, text
        error = data.get("error", data) if isinstance(data, dict) else None
        if isinstance(error, dict):
            code = error.get("code") or error.get("Code")
            message = error.get("message") or error.get("Message") or ""
            if code:
                return code, message
        return None, text

    if text.startswith("<"):
        try:
            root = ET.fromstring(text)
        except ET.ParseError:
            return None, text
        fields = _xml_children(root)
        code = fields.get("Code")
        message = fields.get("Message")
        if code is not None and code.text:
            return code.text.strip(), (message.text or "").strip() if message is not None else ""
        return None, text

    return None, text


def _remote_error(response: requests.Response) -> RemoteError:
    code, message = parse_error_body(response.text)
    return RemoteError(code or f"HTTP{response.status_code}", message or response.reason or "", response.status_code)


def _parse_status(state: str) -> OperationState:
    try:
        return OperationState(state)
    except ValueError:
        logger.warning(f"Unknown operation status '{state}', treating as in progress")
        return OperationState.IN_PROGRESS


def parse_operation_status(body: str) -> OperationStatus:
    """Parse an operation status document (XML ``<Operation>`` or JSON)."""
    text = (body or "").strip()

    if text.startswith("{"):
        data = json.loads(text)
        state = data.get("status") or data.get("Status") or OperationState.IN_PROGRESS.value
        http_status = data.get("httpStatusCode") or data.get("HttpStatusCode")
        error_data = data.get("error") or data.get("Error")
        error = None
        if isinstance(error_data, dict) and (error_data.get("code") or error_data.get("Code")):
            error = RemoteError(
                error_data.get("code") or error_data.get("Code"),
                error_data.get("message") or error_data.get("Message") or "",
                int(http_status) if http_status else None,
            )
        return OperationStatus(_parse_status(state), error, int(http_status) if http_status else None)

    root = ET.fromstring(text)
    fields = _xml_children(root)
    state = fields["Status"].text.strip() if "Status" in fields and fields["Status"].text else ""
    http_status = None
    if "HttpStatusCode" in fields and fields["HttpStatusCode"].text:
        http_status = int(fields["HttpStatusCode"].text.strip())

    error = None
    if "Error" in fields:
        error_fields = _xml_children(fields["Error"])
        code = error_fields.get("Code")
        if code is not None and code.text:
            message = error_fields.get("Message")
            error = RemoteError(
                code.text.strip(),
                (message.text or "").strip() if message is not None else "",
                http_status,
            )

    return OperationStatus(_parse_status(state), error, http_status)


class ManagementClient:
    """
    Management REST API client.

    Attributes:
        base_url: Endpoint root, e.g. https://management.core.windows.net/<subscription>
        api_version: Sent as x-ms-version
        timeout: Per-request timeout in seconds
        log_requests: Log request and response bodies at DEBUG level
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        api_version: str = "2014-06-01",
        timeout: float = 60,
        log_requests: bool = False,
        content_type: str = "application/xml",
    ):
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout
        self.log_requests = log_requests
        self.session = session or requests.Session()
        self.session.headers.update({
            "x-ms-version": api_version,
            "Content-Type": content_type,
        })

    @classmethod
    def from_settings(
        cls,
        subscription_id: str = "",
        settings: Optional[Settings] = None,
        **kwargs: Any,
    ) -> "ManagementClient":
        settings = settings or get_settings()
        base_url = settings.management_url.rstrip("/")
        if subscription_id:
            base_url = f"{base_url}/{subscription_id}"
        config = dict(
            api_version=settings.api_version,
            timeout=settings.request_timeout,
            log_requests=settings.logging.requests,
        )
        config.update(kwargs)
        return cls(base_url, **config)

    def _request(self, method: str, path: str, body: Any = None) -> requests.Response:
        url = f"{self.base_url}{path}"
        if isinstance(body, (dict, list)):
            data = json.dumps(body)
        else:
            data = body

        if self.log_requests:
            logger.debug(f"REQUEST: {method} {url}\n{data or ''}")
        else:
            logger.debug(f"{method} {path}")

        response = self.session.request(method, url, data=data, timeout=self.timeout)

        if self.log_requests:
            logger.debug(f"RESPONSE: {response.status_code} {response.reason}\n{response.text}")

        if response.status_code >= 400:
            error = _remote_error(response)
            logger.debug(f"{method} {path} failed: {error}")
            raise error

        return response

    def start_operation(self, method: str, path: str, body: Any = None) -> Optional[OperationHandle]:
        """
        Submit an operation.

        Returns:
            The request id to poll, or None if the call completed synchronously

        Raises:
            RemoteError: The provider rejected the request
        """
        response = self._request(method, path, body)
        handle = response.headers.get(REQUEST_ID_HEADER)
        if not handle:
            logger.debug(f"{method} {path} completed synchronously ({response.status_code})")
            return None
        logger.info(f"{method} {path} accepted, request id {handle}")
        return handle

    def get_operation_status(self, handle: OperationHandle) -> OperationStatus:
        response = self._request("GET", f"/operations/{handle}")
        return parse_operation_status(response.text)

    def get(self, path: str) -> Dict[str, Any]:
        """GET ``path`` and return the decoded body (JSON, or XML as a flat dict)."""
        response = self._request("GET", path)
        text = response.text.strip()
        if not text:
            return {}
        if text.startswith("<"):
            root = ET.fromstring(text)
            return {_strip_ns(child.tag): (child.text or "").strip() for child in root}
        return response.json()

    def close(self) -> None:
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
