"""
Tests for the Hop plugin pipeline and loader.
"""

import logging
import textwrap

import pytest
from multidict import CIMultiDict

from hop.core.exchange import ProxyRequest, ProxyResponse, UpstreamResponse
from hop.core.plugins import PluginDefinition, PluginLoader, PluginPipeline, as_plugin


def _request(path="/"):
    return ProxyRequest(id="t-1", method="GET", path=path, headers=CIMultiDict())


def _write(path, source):
    path.write_text(textwrap.dedent(source))
    return path


# ── Pipeline ─────────────────────────────────────────────────────────────────

class TestPluginPipeline:
    @pytest.mark.asyncio
    async def test_hooks_run_in_order(self):
        calls = []
        pipeline = PluginPipeline([
            PluginDefinition(name="a", on_request=lambda req, res: calls.append("a")),
            PluginDefinition(name="b", on_request=lambda req, res: calls.append("b")),
            PluginDefinition(name="c", on_response=lambda up, req, res: calls.append("c")),
        ])

        ended = await pipeline.run_request(_request(), ProxyResponse())
        assert ended is False
        assert calls == ["a", "b"]

    @pytest.mark.asyncio
    async def test_send_short_circuits(self):
        calls = []

        def deny(req, res):
            calls.append("deny")
            res.send(401, "unauthorized")

        pipeline = PluginPipeline([
            PluginDefinition(name="deny", on_request=deny),
            PluginDefinition(name="after", on_request=lambda req, res: calls.append("after")),
        ])
        response = ProxyResponse()

        assert await pipeline.run_request(_request(), response) is True
        assert calls == ["deny"]
        assert response.status == 401
        assert response.body == b"unauthorized"
        assert response.headers["Content-Type"] == "text/plain; charset=utf-8"

    @pytest.mark.asyncio
    async def test_failing_hook_is_logged_and_skipped(self, caplog):
        calls = []

        def broken(req, res):
            raise ValueError("bad plugin")

        pipeline = PluginPipeline([
            PluginDefinition(name="broken", on_request=broken),
            PluginDefinition(name="next", on_request=lambda req, res: calls.append("next")),
        ])

        with caplog.at_level(logging.ERROR, logger="hop.core.plugins"):
            ended = await pipeline.run_request(_request(), ProxyResponse())

        assert ended is False
        assert calls == ["next"]
        assert "Plugin 'broken' on_request hook failed: bad plugin" in caplog.text

    @pytest.mark.asyncio
    async def test_async_hooks_are_awaited(self):
        async def tag(req, res):
            req.headers["X-Async"] = "1"

        async def stamp(up, req, res):
            up.headers["X-Seen"] = req.headers["X-Async"]

        pipeline = PluginPipeline([PluginDefinition(name="async", on_request=tag, on_response=stamp)])
        request = _request()
        upstream = UpstreamResponse(status=200, headers=CIMultiDict())

        await pipeline.run_request(request, ProxyResponse())
        await pipeline.run_response(upstream, request, ProxyResponse())
        assert upstream.headers["X-Seen"] == "1"

    @pytest.mark.asyncio
    async def test_response_hook_failure_does_not_stop_chain(self):
        def broken(up, req, res):
            raise RuntimeError("nope")

        def stamp(up, req, res):
            up.headers["X-Stamp"] = "ok"

        pipeline = PluginPipeline([
            PluginDefinition(name="broken", on_response=broken),
            PluginDefinition(name="stamp", on_response=stamp),
        ])
        upstream = UpstreamResponse(status=200, headers=CIMultiDict())
        await pipeline.run_response(upstream, _request(), ProxyResponse())
        assert upstream.headers["X-Stamp"] == "ok"

    def test_names(self):
        pipeline = PluginPipeline([PluginDefinition(name="x"), PluginDefinition(name="y")])
        assert pipeline.names == ["x", "y"]
        assert len(pipeline) == 2
        assert len(PluginPipeline()) == 0

    def test_has_response_hooks(self):
        assert not PluginPipeline().has_response_hooks
        assert not PluginPipeline([PluginDefinition(name="q", on_request=lambda q, r: None)]).has_response_hooks
        assert PluginPipeline([
            PluginDefinition(name="q", on_request=lambda q, r: None),
            PluginDefinition(name="u", on_response=lambda u, q, r: None),
        ]).has_response_hooks


class TestAsPlugin:
    def test_passthrough(self):
        plugin = PluginDefinition(name="p")
        assert as_plugin(plugin) is plugin

    def test_object_with_hooks(self):
        class Auth:
            name = "auth"
            description = "Adds auth"

            def on_request(self, req, res):
                pass

        plugin = as_plugin(Auth())
        assert plugin.name == "auth"
        assert plugin.description == "Adds auth"
        assert plugin.on_request is not None
        assert plugin.on_response is None

    def test_rejects_object_without_hooks(self):
        with pytest.raises(ValueError):
            as_plugin(object(), name="empty")

    def test_rejects_non_callable_hook(self):
        class Bad:
            on_request = "not a function"

        with pytest.raises(TypeError):
            as_plugin(Bad())

    def test_to_dict(self):
        plugin = PluginDefinition(name="p", on_response=lambda *a: None, source_path="./p.py")
        data = plugin.to_dict()
        assert data["hooks"] == ["on_response"]
        assert data["source_path"] == "./p.py"


# ── Loader ───────────────────────────────────────────────────────────────────

class TestPluginLoader:
    def test_module_level_hooks(self, tmp_path):
        _write(tmp_path / "tagger.py", """
            def on_request(request, response):
                request.headers["X-Tag"] = "1"
        """)
        loader = PluginLoader(base_dir=tmp_path)
        plugins = loader.load(["./tagger.py"])

        assert len(plugins) == 1
        assert plugins[0].name == "tagger"
        assert plugins[0].source_path == "./tagger.py"
        assert plugins[0].on_request is not None

    def test_register_function(self, tmp_path):
        _write(tmp_path / "reg.py", """
            from hop.core.plugins import PluginDefinition

            def register():
                return PluginDefinition(name="registered", on_response=lambda u, q, r: None)
        """)
        plugin = PluginLoader().load_one(str(tmp_path / "reg.py"))
        assert plugin.name == "registered"
        assert plugin.on_response is not None

    def test_plugin_attribute(self, tmp_path):
        _write(tmp_path / "objplug.py", """
            class _Plugin:
                def on_request(self, request, response):
                    response.send(418, "teapot")

            plugin = _Plugin()
        """)
        plugin = PluginLoader().load_one(str(tmp_path / "objplug.py"))
        assert plugin.name == "objplug"

    def test_module_attribute_reference(self, tmp_path):
        _write(tmp_path / "many.py", """
            class First:
                def on_request(self, request, response):
                    pass

            class Second:
                def on_response(self, upstream, request, response):
                    pass

            first = First()
            second = Second()
        """)
        plugin = PluginLoader(base_dir=tmp_path).load_one("./many.py:second")
        assert plugin.name == "second"
        assert plugin.on_response is not None
        assert plugin.on_request is None

    def test_same_file_name_in_two_directories(self, tmp_path):
        for team in ("alpha", "beta"):
            (tmp_path / team).mkdir()
            _write(tmp_path / team / "auth.py", f"""
                def on_request(request, response):
                    request.headers["X-Team"] = "{team}"
            """)
        loader = PluginLoader(base_dir=tmp_path)
        first, second = loader.load(["./alpha/auth.py", "./beta/auth.py"])

        assert first.name == second.name == "auth"
        assert first.on_request.__module__ != second.on_request.__module__
        for plugin, team in ((first, "alpha"), (second, "beta")):
            request = _request()
            plugin.on_request(request, ProxyResponse())
            assert request.headers["X-Team"] == team

    def test_dotted_module(self, tmp_path, monkeypatch):
        _write(tmp_path / "hop_test_dotted_plugin.py", """
            def on_response(upstream, request, response):
                upstream.headers["X-Dotted"] = "1"
        """)
        monkeypatch.syspath_prepend(str(tmp_path))
        plugin = PluginLoader().load_one("hop_test_dotted_plugin")
        assert plugin.name == "hop_test_dotted_plugin"

    def test_missing_file_is_skipped(self, tmp_path, caplog):
        _write(tmp_path / "ok.py", """
            def on_request(request, response):
                pass
        """)
        loader = PluginLoader(base_dir=tmp_path)

        with caplog.at_level(logging.WARNING, logger="hop.core.plugins"):
            plugins = loader.load(["./missing.py", "./ok.py"])

        assert [p.name for p in plugins] == ["ok"]
        errors = loader.get_load_errors()
        assert len(errors) == 1
        assert errors[0]["reference"] == "./missing.py"
        assert "Failed to load plugin ./missing.py" in caplog.text

    def test_syntax_error_is_reported(self, tmp_path):
        _write(tmp_path / "broken.py", "def on_request(:\n")
        loader = PluginLoader(base_dir=tmp_path)
        assert loader.load(["./broken.py"]) == []
        assert "broken.py" in loader.get_load_errors()[0]["error"]

    def test_module_without_hooks(self, tmp_path):
        _write(tmp_path / "nothing.py", "VALUE = 1\n")
        with pytest.raises(ValueError, match="No register"):
            PluginLoader().load_one(str(tmp_path / "nothing.py"))

    def test_missing_attribute(self, tmp_path):
        _write(tmp_path / "attrs.py", "x = 1\n")
        with pytest.raises(AttributeError):
            PluginLoader().load_one(f"{tmp_path / 'attrs.py'}:missing")

    def test_example_plugins_load(self):
        from pathlib import Path

        examples = Path(__file__).resolve().parent.parent / "examples" / "plugins"
        loader = PluginLoader(base_dir=examples)
        plugins = loader.load(["./request_id.py", "./maintenance.py"])
        assert [p.name for p in plugins] == ["request_id", "maintenance"]
