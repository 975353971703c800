from __future__ import annotations

import pytest

from scout.errors import ProbeAssertionError, ScriptError
from scout.sandbox import compile_script, run_script


def _run(script: str, *, status_code: int | None = 200, response_time: float | None = 120.0, body=None) -> None:
    run_script(script, status_code=status_code, response_time=response_time, body=body)


def test_empty_script_passes() -> None:
    _run("")
    _run("   \n")


def test_passing_assertions() -> None:
    script = "\n".join(
        [
            'assert status_code == 200, f"unexpected status {status_code}"',
            "latency = response_time",
            'check(latency < 2000, "too slow")',
            'assert body["status"] == "ok"',
            'assert len(body["items"]) == 3 and max(body["items"]) == 3',
            'log("probe looked fine")',
        ]
    )
    _run(script, body={"status": "ok", "items": [1, 2, 3]})


def test_camel_case_aliases_are_available() -> None:
    _run("assert statusCode == 200\nassert responseTime < 500")


def test_failed_assert_uses_its_message() -> None:
    with pytest.raises(ProbeAssertionError) as exc:
        _run('assert status_code == 200, f"unexpected status {status_code}"', status_code=503)
    assert str(exc.value) == "unexpected status 503"


def test_failed_assert_without_message_names_the_condition() -> None:
    with pytest.raises(ProbeAssertionError) as exc:
        _run("assert status_code == 200", status_code=404)
    assert str(exc.value) == "assertion failed: status_code == 200"


def test_check_helper_raises_assertion() -> None:
    with pytest.raises(ProbeAssertionError, match="too slow"):
        _run('check(response_time < 100, "too slow")', response_time=250.0)


def test_later_statements_do_not_run_after_a_failure() -> None:
    # The KeyError on the second line is never reached.
    with pytest.raises(ProbeAssertionError):
        _run('assert status_code == 200\nassert body["missing"]', status_code=500, body={})


def test_runtime_error_is_a_script_error() -> None:
    with pytest.raises(ScriptError) as exc:
        _run('assert body["missing"] == 1', body={})
    assert "KeyError" in str(exc.value)
    assert 'body["missing"] == 1' in str(exc.value)


def test_syntax_error_is_reported_with_line() -> None:
    with pytest.raises(ScriptError, match="syntax error at line 2"):
        compile_script("assert True\nassert (")


@pytest.mark.parametrize(
    "script",
    [
        "import os",
        "from os import path",
        '__import__("os")',
        "body.__class__",
        "x = body.keys()",
        'open("/etc/passwd")',
        "eval('1')",
        "len = 3",
        "body[0] = 1",
        "[x for x in body]",
        "while True:\n    pass",
        "def f():\n    return 1",
        "lambda: 1",
        "_hidden = 1",
        "max(**body)",
    ],
)
def test_unsafe_constructs_are_rejected(script: str) -> None:
    with pytest.raises(ScriptError):
        compile_script(script)


def test_each_run_gets_a_fresh_namespace() -> None:
    _run("seen = 1\nassert seen == 1")
    with pytest.raises(ScriptError, match="NameError"):
        _run("assert seen == 1")


def test_body_is_not_shared_with_caller() -> None:
    body = {"items": [1, 2]}
    _run('items = body["items"]\nassert items == [1, 2]', body=body)
    assert body == {"items": [1, 2]}


def test_huge_repetition_is_rejected_before_it_is_built() -> None:
    with pytest.raises(ScriptError, match="value too large"):
        _run('x = min("a" * 400000000)')
    with pytest.raises(ScriptError, match="value too large"):
        _run("x = 100000000 * [0]")


def test_repeated_doubling_is_rejected() -> None:
    script = 'x = "ab"\n' + "x = x + x\n" * 40
    with pytest.raises(ScriptError, match="value too large"):
        _run(script)


def test_integer_growth_is_bounded() -> None:
    script = "x = 99999999999\n" + "x = x * x\n" * 20
    with pytest.raises(ScriptError, match="integer too large"):
        _run(script)


def test_rendering_shared_nested_values_is_bounded() -> None:
    script = "x = [1]\n" + "x = [x, x]\n" * 40
    with pytest.raises(ScriptError, match="value too large"):
        _run(script + "y = str(x)")
    with pytest.raises(ScriptError, match="value too large"):
        _run(script + 'y = f"{x}"')


def test_percent_formatting_is_rejected_but_modulo_works() -> None:
    _run("assert 7 % 3 == 1")
    with pytest.raises(ScriptError, match="%-formatting"):
        _run('x = "%999999999s" % "a"')


@pytest.mark.parametrize(
    "script",
    [
        'x = f"{status_code:>999999999}"',
        'x = f"{status_code:{response_time}}"',
        "x = f'" + "{status_code}" * 17 + "'",
    ],
)
def test_oversized_fstrings_are_rejected(script: str) -> None:
    with pytest.raises(ScriptError):
        compile_script(script)


def test_ordinary_sequence_operations_still_work() -> None:
    _run('assert "ab" * 3 == "ababab"\nassert [0] * 3 + [1] == [0, 0, 0, 1]\nassert f"{status_code:>5}" == "  200"')
