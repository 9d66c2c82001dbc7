"""Tests for the ScriptUnit: resolution, host object, result translation.

Scripts run in a real Lua runtime (lupa). Each unit gets its own runtime,
disposed when the test ends.

Run:
    pytest tests/test_script_bridge.py -v
"""

import asyncio
import logging
from pathlib import Path

import pytest

from scriptserve.errors import NotFoundError, ScriptRuntimeError
from scriptserve.pipeline.connection import Connection, RequestInfo
from scriptserve.pipeline.middleware import ProcessResult
from scriptserve.scripting.bridge import ScriptUnit
from scriptserve.websocket.channel import SessionState
from scriptserve.websocket.registry import SessionRegistry

SHIPPED_SCRIPTS = Path(__file__).resolve().parents[1] / "wwwroot" / "server"


def lua_string(text: str) -> str:
    """Quote *text* as a Lua literal using decimal byte escapes."""
    return '"' + "".join(f"\\{b}" for b in text.encode("utf-8")) + '"'


def make_request(path: str = "/", **kwargs) -> RequestInfo:
    return RequestInfo(http_method="GET", path=path, raw_url=path, **kwargs)


@pytest.fixture
def script_root(tmp_path):
    root = tmp_path / "server"
    root.mkdir()
    return root


@pytest.fixture
def make_unit(script_root):
    units = []

    def _make(root=None, **kwargs):
        unit = ScriptUnit(root or script_root, **kwargs)
        units.append(unit)
        return unit

    yield _make
    for unit in units:
        unit.dispose()


def write(root: Path, name: str, source: str) -> Path:
    path = root / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(source, encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class TestResolution:
    def test_without_transversal_always_default(self, make_unit, script_root):
        default = write(script_root, "index.lua", "return {}")
        write(script_root, "hello.lua", "return {}")
        unit = make_unit()
        assert unit.resolve_script("/hello") == default.resolve()
        assert unit.resolve_script("/hello.lua") == default.resolve()

    def test_transversal_appends_extension(self, make_unit, script_root):
        write(script_root, "index.lua", "return {}")
        hello = write(script_root, "hello.lua", "return {}")
        unit = make_unit(transversal=True)
        assert unit.resolve_script("/hello") == hello.resolve()
        assert unit.resolve_script("/hello.lua") == hello.resolve()

    def test_transversal_nested_path(self, make_unit, script_root):
        write(script_root, "index.lua", "return {}")
        nested = write(script_root, "api/users.lua", "return {}")
        unit = make_unit(transversal=True)
        assert unit.resolve_script("/api/users") == nested.resolve()

    def test_extensions_tried_in_order(self, make_unit, script_root):
        write(script_root, "index.lua", "return {}")
        first = write(script_root, "page.lua", "return {}")
        write(script_root, "page.luac", "return {}")
        only_second = write(script_root, "other.luac", "return {}")
        unit = make_unit(transversal=True, extensions=(".lua", ".luac"))
        assert unit.resolve_script("/page") == first.resolve()
        assert unit.resolve_script("/other") == only_second.resolve()

    def test_missing_path_falls_back_to_default(self, make_unit, script_root):
        default = write(script_root, "index.lua", "return {}")
        unit = make_unit(transversal=True)
        assert unit.resolve_script("/nothing/here") == default.resolve()
        assert unit.resolve_script("/") == default.resolve()

    def test_escaping_path_falls_back_to_default(self, make_unit, script_root):
        default = write(script_root, "index.lua", "return {}")
        write(script_root.parent, "secret.lua", "return {}")
        unit = make_unit(transversal=True)
        assert unit.resolve_script("/../secret") == default.resolve()

    def test_missing_default_resolves_to_none(self, make_unit):
        unit = make_unit(transversal=True)
        assert unit.resolve_script("/anything") is None


# ---------------------------------------------------------------------------
# Result translation
# ---------------------------------------------------------------------------


class TestExecution:
    @pytest.mark.asyncio
    async def test_missing_default_is_404_without_body(self, make_unit):
        unit = make_unit()
        conn = Connection(request=make_request("/missing"))

        result = await unit.process_request(conn)

        assert result is ProcessResult.STOP
        response = conn.response.build_response()
        assert response.status_code == 404
        assert response.body == b""

    @pytest.mark.asyncio
    async def test_full_result_table(self, make_unit, script_root):
        write(
            script_root,
            "index.lua",
            """
            return {
              statusCode = 201,
              mimeType = "text/plain",
              headers = { {name = "X-One", value = "1"}, {"X-Two", "2"} },
              body = "créé",
            }
            """,
        )
        unit = make_unit()
        descriptor = await unit.execute(make_request())
        assert descriptor.status_code == 201
        assert descriptor.mime_type == "text/plain"
        assert list(descriptor.headers.items()) == [("X-One", "1"), ("X-Two", "2")]
        assert descriptor.body == "créé".encode("utf-8")

    @pytest.mark.asyncio
    async def test_defaults_when_fields_absent(self, make_unit, script_root):
        write(script_root, "index.lua", 'return { body = "plain" }')
        unit = make_unit()
        descriptor = await unit.execute(make_request())
        assert descriptor.status_code == 200
        assert descriptor.mime_type == "application/octet-stream"
        assert "Date" in descriptor.headers
        assert descriptor.headers["X-Powered-By"] == "scriptserve"
        assert descriptor.body == b"plain"

    @pytest.mark.asyncio
    async def test_header_map_emitted_in_name_order(self, make_unit, script_root):
        write(script_root, "index.lua", 'return { headers = { zeta = "z", alpha = 1 } }')
        unit = make_unit()
        descriptor = await unit.execute(make_request())
        assert list(descriptor.headers.items()) == [("alpha", "1"), ("zeta", "z")]

    @pytest.mark.asyncio
    async def test_non_table_result_is_empty_200(self, make_unit, script_root):
        write(script_root, "index.lua", "local x = 1")
        unit = make_unit()
        descriptor = await unit.execute(make_request())
        assert descriptor.status_code == 200
        assert descriptor.body == b""
        assert "Date" in descriptor.headers

    @pytest.mark.asyncio
    async def test_throwing_script_is_500(self, make_unit, script_root, caplog):
        write(
            script_root,
            "index.lua",
            """
            local response = { statusCode = 201, body = "never" }
            error("kaboom")
            return response
            """,
        )
        unit = make_unit()
        conn = Connection(request=make_request())

        with caplog.at_level(logging.ERROR):
            result = await unit.process_request(conn)

        assert result is ProcessResult.STOP_WITH_ERROR
        response = conn.response.build_response()
        assert response.status_code == 500
        assert response.body == b""
        assert "kaboom" in caplog.text

    @pytest.mark.asyncio
    async def test_invalid_status_code_is_500(self, make_unit, script_root):
        write(script_root, "index.lua", "return { statusCode = 9000 }")
        unit = make_unit()
        descriptor = await unit.execute(make_request())
        assert descriptor.status_code == 500

    @pytest.mark.asyncio
    async def test_syntax_error_is_500(self, make_unit, script_root):
        write(script_root, "index.lua", "return {")
        unit = make_unit()
        descriptor = await unit.execute(make_request())
        assert descriptor.status_code == 500

    @pytest.mark.asyncio
    async def test_websocket_requests_pass_through(self, make_unit, script_root):
        write(script_root, "index.lua", "return {}")
        unit = make_unit()
        conn = Connection(request=make_request(is_websocket_request=True))
        assert await unit.process_request(conn) is ProcessResult.CONTINUE
        assert not conn.response.written


# ---------------------------------------------------------------------------
# Host object
# ---------------------------------------------------------------------------


class TestHostObject:
    @pytest.mark.asyncio
    async def test_request_fields_visible(self, make_unit, script_root):
        write(
            script_root,
            "index.lua",
            """
            local r = host.request
            local q = r.queryString[1]
            return { body = r.httpMethod .. " " .. r.rawUrl .. " " .. q.name .. "=" .. q.value
                     .. " " .. tostring(r.contentLength64) .. " " .. tostring(r.userAgent) }
            """,
        )
        unit = make_unit()
        request = RequestInfo(
            http_method="POST",
            path="/form",
            raw_url="/form?a=1",
            query_string=(("a", "1"),),
            headers=(("user-agent", "pytest"),),
        )
        descriptor = await unit.execute(request)
        assert descriptor.body == b"POST /form?a=1 a=1 -1 pytest"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "text",
        ["", "hello", "línea\r\nzwei\n", "tab\tand emoji 🎉", "]] closing brackets ]=]"],
    )
    async def test_write_then_read_round_trip(self, make_unit, script_root, text):
        write(
            script_root,
            "index.lua",
            f"""
            local text = {lua_string(text)}
            host.writeFile("roundtrip.txt", text)
            local back = host.readFile("roundtrip.txt")
            return {{ body = tostring(back == text) .. "|" .. back }}
            """,
        )
        unit = make_unit()
        descriptor = await unit.execute(make_request())
        assert descriptor.body == ("true|" + text).encode("utf-8")
        assert (script_root / "roundtrip.txt").read_bytes() == text.encode("utf-8")

    @pytest.mark.asyncio
    async def test_read_failure_is_script_visible(self, make_unit, script_root):
        write(
            script_root,
            "index.lua",
            """
            local ok, err = pcall(host.readFile, "missing.txt")
            local ok2, err2 = pcall(host.readFile, "../outside.txt")
            return { body = tostring(ok) .. "|" .. tostring(ok2) .. "|" .. err2 }
            """,
        )
        unit = make_unit()
        descriptor = await unit.execute(make_request())
        assert descriptor.body == b"false|false|access denied: ../outside.txt"

    @pytest.mark.asyncio
    async def test_missing_arguments_raise(self, make_unit, script_root):
        write(
            script_root,
            "index.lua",
            """
            local _, e1 = pcall(host.readFile)
            local _, e2 = pcall(host.writeFile, "x.txt")
            local _, e3 = pcall(host.runScript)
            return { body = e1 .. "|" .. e2 .. "|" .. e3 }
            """,
        )
        unit = make_unit()
        descriptor = await unit.execute(make_request())
        assert descriptor.body == b"not enough arguments|not enough arguments|not enough arguments"

    @pytest.mark.asyncio
    async def test_run_script_shares_context(self, make_unit, script_root):
        write(script_root, "lib/helper.lua", 'shared = "x"\nreturn 41')
        write(
            script_root,
            "index.lua",
            'local n = host.runScript("lib/helper.lua")\nreturn { body = tostring(n + 1) .. shared }',
        )
        unit = make_unit()
        before = unit.runtime.source_context
        descriptor = await unit.execute(make_request())
        assert descriptor.body == b"42x"
        assert unit.runtime.source_context == before + 2

    @pytest.mark.asyncio
    async def test_run_script_rejects_empty_source(self, make_unit, script_root):
        write(script_root, "empty.lua", "   \n")
        write(
            script_root,
            "index.lua",
            'local ok, err = pcall(host.runScript, "empty.lua")\nreturn { body = err }',
        )
        unit = make_unit()
        descriptor = await unit.execute(make_request())
        assert descriptor.body == b"invalid script"

    @pytest.mark.asyncio
    async def test_echo_writes_to_stdout(self, make_unit, script_root, capsys):
        write(script_root, "index.lua", 'host.echo("a", 1, true)\nreturn {}')
        unit = make_unit()
        await unit.execute(make_request())
        assert "a 1 true\n" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_sandbox_hides_dangerous_globals(self, make_unit, script_root):
        write(
            script_root,
            "index.lua",
            "return { body = tostring(io) .. tostring(require) .. tostring(load)"
            " .. tostring(dofile) .. tostring(os.execute) .. tostring(python) }",
        )
        unit = make_unit()
        descriptor = await unit.execute(make_request())
        assert descriptor.body == b"nil" * 6

    @pytest.mark.asyncio
    async def test_contexts_are_isolated(self, make_unit, script_root):
        write(
            script_root,
            "index.lua",
            """
            local seen = tostring(leaked)
            leaked = "yes"
            string.shout = function() return "hijacked" end
            return { body = seen .. "|" .. tostring(rawget(string, "shout") ~= nil) }
            """,
        )
        unit = make_unit()
        first = await unit.execute(make_request())
        second = await unit.execute(make_request())
        assert first.body == b"nil|true"
        assert second.body == b"nil|true"

    @pytest.mark.asyncio
    async def test_websocket_callbacks_absent_without_registry(self, make_unit, script_root):
        write(
            script_root,
            "index.lua",
            "return { body = tostring(host.websocketClients) .. tostring(host.websocketPush) }",
        )
        unit = make_unit()
        descriptor = await unit.execute(make_request())
        assert descriptor.body == b"nilnil"

    @pytest.mark.asyncio
    async def test_source_context_counts_each_run(self, make_unit, script_root):
        write(script_root, "index.lua", "return {}")
        unit = make_unit()
        before = unit.runtime.source_context
        for _ in range(3):
            await unit.execute(make_request())
        assert unit.runtime.source_context == before + 3

    @pytest.mark.asyncio
    async def test_error_location_names_the_run(self, make_unit, script_root, caplog):
        write(script_root, "index.lua", 'error("kaboom")')
        unit = make_unit()
        before = unit.runtime.source_context
        with caplog.at_level(logging.ERROR):
            descriptor = await unit.execute(make_request())
        assert descriptor.status_code == 500
        assert f"index.lua#{before + 1}:1: kaboom" in caplog.text

    @pytest.mark.asyncio
    async def test_run_script_error_names_the_library_run(self, make_unit, script_root):
        write(script_root, "lib/bad.lua", 'error("broken")')
        write(
            script_root,
            "index.lua",
            'local ok, err = pcall(host.runScript, "lib/bad.lua")\nreturn { body = err }',
        )
        unit = make_unit()
        before = unit.runtime.source_context
        descriptor = await unit.execute(make_request())
        assert descriptor.body == f"lib/bad.lua#{before + 2}:1: broken".encode()

    def test_dispose_drops_the_interpreter(self, make_unit, script_root):
        write(script_root, "index.lua", "return {}")
        unit = make_unit()
        unit.dispose()
        assert unit.runtime.disposed
        with pytest.raises(RuntimeError, match="disposed"):
            unit.runtime.lua
        unit.dispose()


# ---------------------------------------------------------------------------
# Shipped scripts
# ---------------------------------------------------------------------------


class OpenSocket:
    def __init__(self):
        self.state = SessionState.OPEN
        self.sent = []

    async def send_text(self, text):
        self.sent.append(text)

    async def close(self, code=1000, reason=""):
        self.state = SessionState.CLOSED


class BrokenSocket(OpenSocket):
    async def send_text(self, text):
        raise ConnectionResetError("peer went away")


class TestShippedScripts:
    @pytest.mark.asyncio
    async def test_index_page(self, make_unit, capsys):
        unit = make_unit(root=SHIPPED_SCRIPTS)
        request = make_request("/", query_string=(("q", "1"),), headers=(("host", "example"),))
        descriptor = await unit.execute(request)
        assert descriptor.status_code == 200
        assert descriptor.mime_type == "text/html"
        assert descriptor.headers == {"foo": "bar"}
        assert descriptor.body == b"hello world"
        out = capsys.readouterr().out
        assert "httpMethod = GET" in out
        assert "  q = 1" in out

    @pytest.mark.asyncio
    async def test_echo_command(self, make_unit):
        unit = make_unit(root=SHIPPED_SCRIPTS, registry=SessionRegistry())
        reply = await unit.handle_websocket_text("some-id", "echo hello there")
        assert reply == "you said hello there and i say oww!"

    @pytest.mark.asyncio
    async def test_showid(self, make_unit):
        unit = make_unit(root=SHIPPED_SCRIPTS, registry=SessionRegistry())
        assert await unit.handle_websocket_text("abc-123", "showid") == "abc-123"

    @pytest.mark.asyncio
    async def test_showid_all_lists_registry_in_order(self, make_unit):
        registry = SessionRegistry()
        ids = [registry.add_socket(OpenSocket()) for _ in range(3)]
        unit = make_unit(root=SHIPPED_SCRIPTS, registry=registry)

        reply = await unit.handle_websocket_text(ids[0], "showid all")

        assert reply == ", ".join(ids)

    @pytest.mark.asyncio
    async def test_push_delivers_to_target(self, make_unit):
        registry = SessionRegistry()
        target = OpenSocket()
        target_id = registry.add_socket(target)
        unit = make_unit(root=SHIPPED_SCRIPTS, registry=registry)

        reply = await unit.handle_websocket_text("sender", f"push {target_id} hi there")
        await asyncio.sleep(0.05)

        assert reply == f"pushed to {target_id}"
        assert target.sent == ["hi there"]

    @pytest.mark.asyncio
    async def test_failed_push_is_logged(self, make_unit, script_root, caplog):
        registry = SessionRegistry()
        target_id = registry.add_socket(BrokenSocket())
        write(
            script_root,
            "index.lua",
            f"host.websocketPush({lua_string(target_id)}, \"hi\")\nreturn {{ body = \"sent\" }}",
        )
        unit = make_unit(registry=registry)

        with caplog.at_level(logging.WARNING):
            descriptor = await unit.execute(make_request())
            for _ in range(50):
                if "peer went away" in caplog.text:
                    break
                await asyncio.sleep(0.01)

        assert descriptor.body == b"sent"
        assert "peer went away" in caplog.text

    @pytest.mark.asyncio
    async def test_unknown_command_returns_usage(self, make_unit):
        unit = make_unit(root=SHIPPED_SCRIPTS, registry=SessionRegistry())
        reply = await unit.handle_websocket_text("id", "dance")
        assert reply == "help | echo {message} | showid {all} | push {id} {message}"

    @pytest.mark.asyncio
    async def test_message_script_error_propagates(self, make_unit, script_root):
        write(script_root, "websocket.lua", 'error("bad message")')
        unit = make_unit(registry=SessionRegistry())
        with pytest.raises(ScriptRuntimeError, match="bad message"):
            await unit.handle_websocket_text("id", "anything")

    @pytest.mark.asyncio
    async def test_missing_message_script_is_not_found(self, make_unit):
        unit = make_unit(registry=SessionRegistry())
        with pytest.raises(NotFoundError) as raised:
            await unit.handle_websocket_text("id", "anything")
        assert raised.value.status_code == 404


class TestDispose:
    def test_dispose_is_idempotent(self, script_root):
        unit = ScriptUnit(script_root)
        unit.dispose()
        unit.dispose()
        assert unit.runtime.disposed
