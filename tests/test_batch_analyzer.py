"""
Tests for batch analysis.

Tests cover:
- Output order matches input order regardless of completion order
- Partial failure is captured per file
- Cache hits skip the analysis callback
- Bounded concurrency
- Cancellation and per-file timeouts
"""

import asyncio

import pytest

from local_llm_mcp.analysis_cache import AnalysisCache
from local_llm_mcp.batch_analyzer import BatchAnalyzer
from local_llm_mcp.exceptions import ModelCallError


FILES = ["/p/a.py", "/p/b.py", "/p/c.py", "/p/d.py"]


class TestBatchAnalyzer:
    """Tests for BatchAnalyzer.analyze_batch."""

    @pytest.mark.asyncio
    async def test_order_preserved_when_first_is_slowest(self, analysis_cache: AnalysisCache):
        delays = {"/p/a.py": 0.05, "/p/b.py": 0.0, "/p/c.py": 0.02, "/p/d.py": 0.0}
        finished = []

        async def analyze(path):
            await asyncio.sleep(delays[path])
            finished.append(path)
            return {"file": path}

        result = await BatchAnalyzer(analysis_cache, max_concurrency=4).analyze_batch(
            FILES, analyze, 8000, task_name="t", params={}
        )

        assert finished[0] != "/p/a.py"
        assert [o.file for o in result.outcomes] == FILES
        assert [o.data["file"] for o in result.outcomes] == FILES

    @pytest.mark.asyncio
    async def test_partial_failure(self, analysis_cache: AnalysisCache):
        async def analyze(path):
            if path == "/p/b.py":
                raise ModelCallError("backend exploded")
            if path == "/p/c.py":
                raise RuntimeError("boom")
            return {"ok": path}

        result = await BatchAnalyzer(analysis_cache).analyze_batch(
            FILES, analyze, 8000, task_name="t", params={}
        )

        assert result.succeeded == 2
        assert result.failed == 2
        assert result.outcomes[1].error.code == "MODEL_ERROR"
        assert result.outcomes[2].error.code == "EXECUTION_ERROR"
        assert result.outcomes[3].data == {"ok": "/p/d.py"}

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, analysis_cache: AnalysisCache):
        calls = []

        async def analyze(path):
            calls.append(path)
            raise ModelCallError("nope")

        analyzer = BatchAnalyzer(analysis_cache)
        await analyzer.analyze_batch(["/p/a.py"], analyze, 8000, task_name="t", params={})
        await analyzer.analyze_batch(["/p/a.py"], analyze, 8000, task_name="t", params={})

        assert calls == ["/p/a.py", "/p/a.py"]

    @pytest.mark.asyncio
    async def test_second_run_is_served_from_cache(self, analysis_cache: AnalysisCache):
        calls = []

        async def analyze(path):
            calls.append(path)
            return {"file": path}

        analyzer = BatchAnalyzer(analysis_cache)
        await analyzer.analyze_batch(FILES, analyze, 8000, task_name="t", params={"q": 1})
        result = await analyzer.analyze_batch(FILES, analyze, 8000, task_name="t", params={"q": 1})

        assert len(calls) == len(FILES)
        assert result.cached == len(FILES)
        assert all(o.cached for o in result.outcomes)

    @pytest.mark.asyncio
    async def test_cached_none_result_is_a_hit(self, analysis_cache: AnalysisCache):
        calls = []

        async def analyze(path):
            calls.append(path)
            return None

        analyzer = BatchAnalyzer(analysis_cache)
        await analyzer.analyze_batch(["/p/a.py"], analyze, 8000, task_name="t", params={})
        result = await analyzer.analyze_batch(["/p/a.py"], analyze, 8000, task_name="t", params={})

        assert calls == ["/p/a.py"]
        assert result.outcomes[0].cached is True
        assert result.outcomes[0].data is None
        assert result.outcomes[0].success

    @pytest.mark.asyncio
    async def test_context_length_is_part_of_the_key(self, analysis_cache: AnalysisCache):
        calls = []

        async def analyze(path):
            calls.append(path)
            return {}

        analyzer = BatchAnalyzer(analysis_cache)
        await analyzer.analyze_batch(["/p/a.py"], analyze, 8000, task_name="t", params={})
        await analyzer.analyze_batch(["/p/a.py"], analyze, 16000, task_name="t", params={})

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, analysis_cache: AnalysisCache):
        running = 0
        peak = 0

        async def analyze(path):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return {}

        files = [f"/p/{i}.py" for i in range(12)]
        await BatchAnalyzer(analysis_cache, max_concurrency=3).analyze_batch(
            files, analyze, 8000, task_name="t", params={}
        )

        assert peak == 3

    @pytest.mark.asyncio
    async def test_cancellation_marks_unstarted_files(self, analysis_cache: AnalysisCache):
        cancel = asyncio.Event()

        async def analyze(path):
            cancel.set()
            return {"file": path}

        result = await BatchAnalyzer(analysis_cache, max_concurrency=1).analyze_batch(
            FILES, analyze, 8000, task_name="t", params={}, cancel_event=cancel
        )

        assert result.cancelled is True
        assert result.outcomes[0].success
        assert [o.error.code for o in result.outcomes[1:]] == ["CANCELLED"] * 3
        # The finished unit stays cached
        key = analysis_cache.generate_key("t", {"context_length": 8000}, ["/p/a.py"])
        assert analysis_cache.get(key) == {"file": "/p/a.py"}

    @pytest.mark.asyncio
    async def test_per_file_timeout(self, analysis_cache: AnalysisCache):
        async def analyze(path):
            if path == "/p/a.py":
                await asyncio.sleep(1)
            return {}

        result = await BatchAnalyzer(analysis_cache, per_file_timeout=0.05).analyze_batch(
            ["/p/a.py", "/p/b.py"], analyze, 8000, task_name="t", params={}
        )

        assert result.outcomes[0].error.code == "MODEL_TIMEOUT"
        assert result.outcomes[1].success

    @pytest.mark.asyncio
    async def test_empty_batch(self, analysis_cache: AnalysisCache):
        async def analyze(path):
            return {}

        result = await BatchAnalyzer(analysis_cache).analyze_batch([], analyze, 8000, task_name="t", params={})

        assert result.outcomes == []
        assert result.summary()["total"] == 0

    def test_invalid_concurrency(self, analysis_cache: AnalysisCache):
        with pytest.raises(ValueError):
            BatchAnalyzer(analysis_cache, max_concurrency=0)

    @pytest.mark.asyncio
    async def test_to_dict(self, analysis_cache: AnalysisCache):
        async def analyze(path):
            if path == "/p/b.py":
                raise ModelCallError("bad")
            return {"v": 1}

        result = await BatchAnalyzer(analysis_cache).analyze_batch(
            ["/p/a.py", "/p/b.py"], analyze, 8000, task_name="t", params={}
        )
        payload = result.to_dict()

        assert payload["files"][0] == {"file": "/p/a.py", "success": True, "cached": False, "data": {"v": 1}}
        assert payload["files"][1]["error"]["code"] == "MODEL_ERROR"
        assert payload["summary"]["failed"] == 1
