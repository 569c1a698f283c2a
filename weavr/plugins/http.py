from __future__ import annotations

import dataclasses
import functools
from typing import Any, Dict, Optional

import httpx

from weavr.engine.models import ActionContext, ActionDescriptor, TriggerDescriptor, TriggerMode
from weavr.engine.registry import Plugin
from weavr.service.errors import ActionExecutionError
from weavr.service.http_retry import DEFAULT_RETRY_POLICY, RetryPolicy, build_http_client, request_with_retry

METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"}


def _decode_body(response: httpx.Response) -> Any:
    if "json" in response.headers.get("content-type", ""):
        try:
            return response.json()
        except ValueError:
            pass
    return response.text


async def _send(
    ctx: ActionContext,
    method: str,
    url: Optional[str],
    *,
    body: Any = None,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> Dict[str, Any]:
    if not url:
        raise ActionExecutionError("http action requires a 'url'")
    method = method.upper()
    if method not in METHODS:
        raise ActionExecutionError(f"unsupported HTTP method '{method}'")
    if ctx.config.get("timeout"):
        # timeout is given in milliseconds
        policy = dataclasses.replace(policy, timeout=float(ctx.config["timeout"]) / 1000)
    kwargs: Dict[str, Any] = {"headers": dict(ctx.config.get("headers") or {}), "params": ctx.config.get("query")}
    if body is not None:
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        else:
            kwargs["content"] = str(body)
    ctx.log(f"{method} {url}")
    if ctx.http_client is not None:
        response = await request_with_retry(ctx.http_client, method, url, policy=policy, **kwargs)
    else:
        async with build_http_client(timeout=policy.timeout) as client:
            response = await request_with_retry(client, method, url, policy=policy, **kwargs)
    result = {
        "status": response.status_code,
        "ok": response.is_success,
        "headers": dict(response.headers),
        "data": _decode_body(response),
    }
    if not response.is_success and ctx.config.get("failOnError", True):
        raise ActionExecutionError(
            f"{method} {url} returned {response.status_code}",
            detail={"status": response.status_code, "body": response.text[:200]},
        )
    return result


async def request(ctx: ActionContext, policy: RetryPolicy = DEFAULT_RETRY_POLICY) -> Dict[str, Any]:
    method = str(ctx.config.get("method", "GET"))
    return await _send(ctx, method, ctx.config.get("url"), body=ctx.config.get("body"), policy=policy)


async def get(ctx: ActionContext, policy: RetryPolicy = DEFAULT_RETRY_POLICY) -> Dict[str, Any]:
    return await _send(ctx, "GET", ctx.config.get("url"), policy=policy)


async def post(ctx: ActionContext, policy: RetryPolicy = DEFAULT_RETRY_POLICY) -> Dict[str, Any]:
    return await _send(ctx, "POST", ctx.config.get("url"), body=ctx.config.get("body"), policy=policy)


def plugin(policy: RetryPolicy = DEFAULT_RETRY_POLICY) -> Plugin:
    return Plugin(
        name="http",
        version="1.0.0",
        description="Outbound HTTP requests and inbound webhooks",
        actions=(
            ActionDescriptor("request", functools.partial(request, policy=policy), "Send an HTTP request"),
            ActionDescriptor("get", functools.partial(get, policy=policy), "Send a GET request"),
            ActionDescriptor(
                "post", functools.partial(post, policy=policy), "Send a POST request with a JSON or text body"
            ),
        ),
        # webhook bindings are owned by the scheduler; the gateway delivers the payload
        triggers=(TriggerDescriptor("webhook", TriggerMode.WEBHOOK, "Run when a webhook is received"),),
    )
