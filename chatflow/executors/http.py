"""
HTTP integrations: generic HTTP request and outbound webhook nodes.

Both use ``httpx.AsyncClient``. A shared client can be injected (tests pass
one built on ``httpx.MockTransport``); otherwise a short-lived client is
opened per call.
"""

import json
import logging
from typing import Any

import httpx

from chatflow.graph.node import ExecutionContext, NodeSpec

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


def _headers(raw: Any) -> dict[str, str]:
    """Headers come either as a mapping or as builder rows of ``{key, value}``."""
    if isinstance(raw, dict):
        return {str(k): str(v) for k, v in raw.items()}
    headers: dict[str, str] = {}
    for row in raw or []:
        if isinstance(row, dict) and row.get("key"):
            headers[str(row["key"])] = str(row.get("value", ""))
    return headers


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class _HttpExecutorBase:
    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.client = client
        self.timeout = timeout

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self.client is not None:
            return await self.client.request(method, url, timeout=self.timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(method, url, **kwargs)


class HttpRequestExecutor(_HttpExecutorBase):
    """
    Calls an arbitrary HTTP endpoint and stores the response in variables.

    Node data: ``url``, ``method`` (GET), ``headers``, ``queryParams``,
    ``body`` (JSON string or object, templated), ``responseVariable``
    (``httpResponse``), ``statusVariable`` (``httpStatus``) and
    ``failOnError``. Transport errors always fail the node; HTTP error
    statuses only do when ``failOnError`` is set.
    """

    async def execute(
        self,
        node: NodeSpec,
        context: ExecutionContext,
        conversation,
        contact,
        channel_connection,
    ) -> None:
        data = node.data
        url = context.render(data.get("url"))
        if not url:
            raise ValueError(f"HTTP request node '{node.id}' has no URL")
        method = str(data.get("method") or "GET").upper()

        kwargs: dict[str, Any] = {"headers": _headers(context.render_value(data.get("headers")))}
        params = context.render_value(data.get("queryParams") or data.get("params"))
        if params:
            kwargs["params"] = _headers(params)

        body = data.get("body")
        if body and method not in ("GET", "HEAD"):
            if isinstance(body, str):
                rendered = context.render(body)
                try:
                    kwargs["json"] = json.loads(rendered)
                except json.JSONDecodeError:
                    kwargs["content"] = rendered
            else:
                kwargs["json"] = context.render_value(body)

        logger.info(f"🌐 {method} {url} (node '{node.id}')")
        response = await self._send(method, url, **kwargs)
        logger.info(f"🌐 {method} {url} -> {response.status_code}")

        context.set_variable(data.get("statusVariable") or "httpStatus", response.status_code)
        response_variable = data.get("responseVariable") or "httpResponse"
        context.set_variable(response_variable, _response_body(response))

        if data.get("failOnError"):
            response.raise_for_status()


class WebhookExecutor(_HttpExecutorBase):
    """
    Posts the session state to a webhook.

    Sends ``payload`` from the node data when configured, otherwise a
    default envelope with the session, contact and message.
    """

    async def execute(
        self,
        node: NodeSpec,
        context: ExecutionContext,
        conversation,
        contact,
        channel_connection,
    ) -> None:
        url = context.render(node.data.get("url") or node.data.get("webhookUrl"))
        if not url:
            raise ValueError(f"Webhook node '{node.id}' has no URL")

        payload = node.data.get("payload")
        if payload:
            payload = context.render_value(payload)
        else:
            payload = {
                "session_id": context.session_id,
                "flow_id": context.flow_id,
                "conversation_id": conversation.id,
                "contact": contact.model_dump(mode="json"),
                "message": context.message.model_dump(mode="json"),
                "variables": {
                    k: v for k, v in context.variables.items() if k not in ("message", "contact")
                },
            }

        response = await self._send(
            str(node.data.get("method") or "POST").upper(),
            url,
            json=payload,
            headers=_headers(context.render_value(node.data.get("headers"))),
        )
        logger.info(f"📤 Webhook '{node.id}' delivered -> {response.status_code}")
        context.set_variable("webhookStatus", response.status_code)
        response.raise_for_status()
