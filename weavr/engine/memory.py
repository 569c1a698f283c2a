from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx

from weavr.config import ConfigProvider, WebSearchConfig
from weavr.engine.models import MemoryBlockSpec, MemorySourceSpec
from weavr.engine.template import MISSING, render_string, resolve_path, to_text
from weavr.logging import get_logger
from weavr.service.errors import WeavrError
from weavr.service.fs import truncate_text
from weavr.service.http_retry import build_http_client
from weavr.service.web import (
    DEFAULT_MAX_RESULTS,
    SearchResult,
    fetch_page_text,
    format_search_results,
    web_search,
)

logger = get_logger(__name__)

Fetcher = Callable[[str], Awaitable[str]]
Searcher = Callable[[str, int], Awaitable[List[SearchResult]]]

_WS = re.compile(r"\s+")


@dataclass
class AssembledMemory:
    """Block text keyed by block id, plus each block's per-source text."""

    blocks: Dict[str, str] = field(default_factory=dict)
    sources: Dict[str, Dict[str, str]] = field(default_factory=dict)


def dedupe_lines(text: str) -> str:
    """Drop lines equal to an earlier line after whitespace/case normalization."""
    seen: set[str] = set()
    kept: List[str] = []
    for line in text.splitlines():
        normalized = _WS.sub(" ", line).strip().lower()
        if normalized:
            if normalized in seen:
                continue
            seen.add(normalized)
        kept.append(line)
    return "\n".join(kept)


class MemoryAssembler:
    """Builds memory block text from inline, file, web and run-data sources."""

    def __init__(
        self,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        config_provider: Optional[ConfigProvider] = None,
        base_dir: Optional[Path] = None,
        fetch: Optional[Fetcher] = None,
        search: Optional[Searcher] = None,
    ) -> None:
        self._http_client = http_client
        self._config_provider = config_provider
        self._base_dir = base_dir
        self._fetch = fetch
        self._search = search

    async def assemble(
        self,
        blocks: Sequence[MemoryBlockSpec],
        context: Mapping[str, Any],
        *,
        cache: Optional[AssembledMemory] = None,
    ) -> AssembledMemory:
        """Assemble every block.

        Blocks without ``step`` sources are taken from ``cache`` when present
        there; blocks reading step output are always rebuilt so they see the
        latest completed steps.
        """
        result = AssembledMemory()
        for block in blocks:
            if cache is not None and not block.depends_on_run and block.id in cache.blocks:
                result.blocks[block.id] = cache.blocks[block.id]
                result.sources[block.id] = cache.sources.get(block.id, {})
                continue
            text, named = await self.assemble_block(block, context)
            result.blocks[block.id] = text
            result.sources[block.id] = named
            if cache is not None and not block.depends_on_run:
                cache.blocks[block.id] = text
                cache.sources[block.id] = named
        return result

    async def assemble_block(
        self, block: MemoryBlockSpec, context: Mapping[str, Any]
    ) -> Tuple[str, Dict[str, str]]:
        named: Dict[str, str] = {}
        ordered: List[str] = []
        for index, source in enumerate(block.sources):
            try:
                text = await self._resolve_source(source, context)
            except (WeavrError, OSError, httpx.HTTPError, ValueError) as exc:
                logger.warning(
                    "memory_source_failed",
                    block=block.id,
                    source=source.key(index),
                    source_type=source.type,
                    error=str(exc),
                )
                text = ""
            text = truncate_text(text, source.max_chars)
            named[source.key(index)] = text
            ordered.append(text)

        if block.template:
            rendered = render_string(block.template, {"sources": named, **named})
            combined = to_text(rendered)
        else:
            combined = block.separator.join(part for part in ordered if part)

        if block.dedupe:
            combined = dedupe_lines(combined)
        combined = truncate_text(combined, block.max_chars)
        logger.debug("memory_block_assembled", block=block.id, chars=len(combined))
        return combined, named

    async def _resolve_source(self, source: MemorySourceSpec, context: Mapping[str, Any]) -> str:
        if source.type == "text":
            return source.text or ""
        if source.type == "file":
            return await asyncio.to_thread(self._read_file, source.path or "")
        if source.type == "url":
            return await self._fetch_url(source.url or "")
        if source.type == "web_search":
            results = await self._run_search(source.query or "", source.max_results or DEFAULT_MAX_RESULTS)
            return format_search_results(results)
        if source.type == "step":
            value = resolve_path(["steps", source.step or ""], context)
            if source.path and value is not MISSING:
                value = resolve_path(source.path, value)
            return to_text(value)
        if source.type == "trigger":
            path = (source.path or "").strip()
            if path.startswith("trigger."):
                path = path[len("trigger."):]
            if not path or path == "trigger":
                return to_text(context.get("trigger"))
            return to_text(resolve_path(path, context.get("trigger") or {}))
        raise ValueError(f"unknown memory source type '{source.type}'")

    def _read_file(self, raw_path: str) -> str:
        path = Path(raw_path).expanduser()
        if not path.is_absolute() and self._base_dir is not None:
            path = self._base_dir / path
        return path.read_text(encoding="utf-8", errors="replace")

    async def _fetch_url(self, url: str) -> str:
        if self._fetch is not None:
            return await self._fetch(url)
        if self._http_client is None:
            async with build_http_client() as client:
                return await fetch_page_text(client, url)
        return await fetch_page_text(self._http_client, url)

    async def _run_search(self, query: str, max_results: int) -> List[SearchResult]:
        if self._search is not None:
            return await self._search(query, max_results)
        config = self._config_provider.web_search() if self._config_provider else WebSearchConfig()
        if self._http_client is None:
            async with build_http_client() as client:
                return await web_search(client, config, query, max_results=max_results)
        return await web_search(self._http_client, config, query, max_results=max_results)
