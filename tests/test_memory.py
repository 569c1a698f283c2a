import pytest

from weavr.engine.executor import WorkflowExecutor
from weavr.engine.memory import AssembledMemory, MemoryAssembler, dedupe_lines
from weavr.engine.models import ActionDescriptor, MemoryBlockSpec, MemorySourceSpec
from weavr.engine.parser import parse_workflow
from weavr.engine.registry import Kind, Registry
from weavr.service.web import SearchResult


CONTEXT = {"trigger": {"body": {"topic": "rust"}}, "steps": {"fetch": {"data": {"title": "Hello"}}}, "env": {}}


def test_dedupe_lines_normalizes_whitespace_and_case():
    text = "Alpha  beta\nalpha beta\n\nGamma\n\n"

    assert dedupe_lines(text) == "Alpha  beta\n\nGamma\n"


@pytest.mark.asyncio
async def test_sources_join_in_order_with_separator():
    block = MemoryBlockSpec(
        id="ctx",
        sources=(
            MemorySourceSpec(type="text", text="one"),
            MemorySourceSpec(type="step", step="fetch", path="data.title"),
            MemorySourceSpec(type="trigger", path="trigger.body.topic"),
        ),
        separator=" | ",
    )

    text, named = await MemoryAssembler().assemble_block(block, CONTEXT)

    assert text == "one | Hello | rust"
    assert named == {"source1": "one", "source2": "Hello", "source3": "rust"}


@pytest.mark.asyncio
async def test_template_and_limits_apply():
    block = MemoryBlockSpec(
        id="ctx",
        sources=(
            MemorySourceSpec(type="text", id="intro", text="abcdefgh", max_chars=4),
            MemorySourceSpec(type="text", id="outro", text="xyz"),
        ),
        template="[{{ intro }}] [{{ sources.outro }}]",
        max_chars=9,
    )

    text, named = await MemoryAssembler().assemble_block(block, CONTEXT)

    assert named["intro"] == "abcd"
    assert text == "[abcd] [x"


@pytest.mark.asyncio
async def test_failing_source_yields_empty_text(tmp_path):
    block = MemoryBlockSpec(
        id="ctx",
        sources=(
            MemorySourceSpec(type="file", id="gone", path="missing.txt"),
            MemorySourceSpec(type="text", text="kept"),
        ),
    )

    text, named = await MemoryAssembler(base_dir=tmp_path).assemble_block(block, CONTEXT)

    assert named["gone"] == ""
    assert text == "kept"


@pytest.mark.asyncio
async def test_file_url_and_search_sources(tmp_path):
    (tmp_path / "notes.md").write_text("from disk", encoding="utf-8")
    fetched = []

    async def fetch(url):
        fetched.append(url)
        return "page body"

    async def search(query, max_results):
        return [SearchResult(title=f"{query} news", url="https://news.test/1", snippet="snip")][:max_results]

    block = MemoryBlockSpec(
        id="ctx",
        sources=(
            MemorySourceSpec(type="file", path="notes.md"),
            MemorySourceSpec(type="url", url="https://example.test/page"),
            MemorySourceSpec(type="web_search", query="rust", max_results=1),
        ),
        separator="\n",
    )
    assembler = MemoryAssembler(base_dir=tmp_path, fetch=fetch, search=search)

    text, _ = await assembler.assemble_block(block, CONTEXT)

    assert text == "from disk\npage body\n1. rust news\nhttps://news.test/1\nsnip"
    assert fetched == ["https://example.test/page"]


@pytest.mark.asyncio
async def test_static_blocks_are_cached_but_step_blocks_rebuild():
    calls = []

    async def fetch(url):
        calls.append(url)
        return "static"

    static = MemoryBlockSpec(id="static", sources=(MemorySourceSpec(type="url", url="https://x.test"),))
    dynamic = MemoryBlockSpec(id="dynamic", sources=(MemorySourceSpec(type="step", step="fetch"),))
    assembler = MemoryAssembler(fetch=fetch)
    cache = AssembledMemory()

    first = await assembler.assemble([static, dynamic], CONTEXT, cache=cache)
    second = await assembler.assemble(
        [static, dynamic], {**CONTEXT, "steps": {"fetch": "later"}}, cache=cache
    )

    assert calls == ["https://x.test"]
    assert first.blocks["static"] == second.blocks["static"] == "static"
    assert second.blocks["dynamic"] == "later"
    assert "dynamic" not in cache.blocks


@pytest.mark.asyncio
async def test_steps_see_assembled_memory():
    seen = {}

    async def capture(ctx):
        seen["memory"] = dict(ctx.memory)
        seen["config"] = ctx.config
        return "ok"

    async def produce(ctx):
        return {"title": "Fresh"}

    registry = Registry()
    registry.register(Kind.ACTION, "test.capture", ActionDescriptor("capture", capture))
    registry.register(Kind.ACTION, "test.produce", ActionDescriptor("produce", produce))
    source = """
name: mem
memory:
  - id: notes
    sources:
      - type: text
        text: remember this
      - type: step
        step: produce
        path: title
    separator: " / "
steps:
  - id: produce
    action: test.produce
  - id: use
    action: test.capture
    needs: [produce]
    with:
      prompt: "{{ memory.blocks.notes }}"
"""
    executor = WorkflowExecutor(registry)

    run = await executor.execute(parse_workflow(source))

    assert run.steps["use"].output == "ok"
    assert seen["memory"] == {"notes": "remember this / Fresh"}
    assert seen["config"] == {"prompt": "remember this / Fresh"}


@pytest.mark.asyncio
async def test_unknown_source_type_is_logged_not_raised():
    block = MemoryBlockSpec(id="ctx", sources=(MemorySourceSpec(type="carrier-pigeon"),))

    text, _ = await MemoryAssembler().assemble_block(block, CONTEXT)

    assert text == ""

