from __future__ import annotations

import sys
import threading

import httpx
import pytest

import distcalc
from adapters.transport.in_memory_broker import InMemoryBroker
from config import Settings
from contracts import (
    ExpressionRequest,
    ExpressionResponse,
    Operation,
    OperationRequest,
    OperationResponse,
)
from ports.transport import TransportError


class _StubResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload

    def raise_for_status(self) -> None:
        return None

    def json(self):
        return self._payload


def _run_cli(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["distcalc", *argv])
    with pytest.raises(SystemExit) as exc_info:
        distcalc.main()
    return exc_info.value.code


def test_remote_evaluate_posts_expression(monkeypatch):
    def _fake_post(url, json, timeout):
        assert url == "http://api.test/evaluate"
        assert json == {"expression": "10+20*3", "deadline_ms": 2000}
        assert timeout == 7.0
        return _StubResponse(200, {"expression_id": "CLIENT-1_expr_1", "result": 70.0})

    monkeypatch.setattr("distcalc.httpx.post", _fake_post)

    response = distcalc._remote_evaluate("http://api.test/", "10+20*3", 2000)

    assert response.result == 70.0


def test_remote_evaluate_reads_error_body(monkeypatch):
    payload = {
        "expression_id": "CLIENT-1_expr_2",
        "error": {"code": "DIV_BY_ZERO", "message": "division by zero"},
    }
    monkeypatch.setattr("distcalc.httpx.post", lambda *a, **kw: _StubResponse(422, payload))

    response = distcalc._remote_evaluate("http://api.test", "5/0", None)

    assert response.error.code.value == "DIV_BY_ZERO"


def test_eval_command_remote_connection_error_exits_1(monkeypatch):
    def _fake_post(*args, **kwargs):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr("distcalc.httpx.post", _fake_post)

    assert _run_cli(monkeypatch, "eval", "--expr", "1+1", "--url", "http://api.test") == 1


def test_eval_command_local_sync(monkeypatch, capsys):
    assert _run_cli(monkeypatch, "eval", "--expr", "((4+3)*2)/5", "--sync") == 0
    assert "= 2.8" in capsys.readouterr().out


def test_eval_command_local_error_exits_2(monkeypatch):
    assert _run_cli(monkeypatch, "eval", "--expr", "5/0", "--sync") == 2


def test_compile_command_prints_postfix(monkeypatch, capsys):
    monkeypatch.setattr(sys, "argv", ["distcalc", "compile", "--expr", "10+20*3"])

    distcalc.main()

    out = capsys.readouterr().out
    assert "10 20 3 * +" in out
    assert "multiply" in out


def test_compile_command_parse_error(monkeypatch):
    assert _run_cli(monkeypatch, "compile", "--expr", "(1+2") == 1


def test_percentile():
    assert distcalc._percentile([1.0, 2.0, 3.0, 4.0, 5.0], 50) == 3.0
    assert distcalc._percentile([], 99) == 0.0


def _broker_for(monkeypatch) -> InMemoryBroker:
    broker = InMemoryBroker()
    broker.setup_queues(Settings().all_queues())
    monkeypatch.setattr("runtime.connect_amqp", lambda settings: broker)
    return broker


def test_worker_command_serves_operation_queue(monkeypatch):
    broker = _broker_for(monkeypatch)
    settings = Settings()
    results: list[OperationResponse] = []

    def _one_round_trip():
        done = threading.Event()

        def _on_result(delivery):
            results.append(OperationResponse.model_validate_json(delivery.body))
            delivery.ack()
            done.set()

        broker.subscribe(settings.results_queue, _on_result)
        request = OperationRequest(
            expression_id="CLIENT-1_expr_1", step_id=0,
            operation=Operation.MULTIPLY, operands=(6.0, 7.0), deadline_ms=5_000,
        )
        broker.publish(settings.operation_queues[Operation.MULTIPLY], request.model_dump_json().encode())
        assert done.wait(timeout=5)
        raise KeyboardInterrupt

    monkeypatch.setattr("distcalc._wait_for_interrupt", _one_round_trip)
    monkeypatch.setattr(sys, "argv", ["distcalc", "worker", "--operation", "multiply"])

    distcalc.main()

    assert [r.result for r in results] == [42.0]
    with pytest.raises(TransportError):
        broker.publish("operations.multiply", b"{}")


def test_dispatcher_command_answers_expressions(monkeypatch):
    broker = _broker_for(monkeypatch)
    settings = Settings()
    responses: list[ExpressionResponse] = []

    def _one_round_trip():
        done = threading.Event()

        def _on_response(delivery):
            responses.append(ExpressionResponse.model_validate_json(delivery.body))
            delivery.ack()
            done.set()

        broker.subscribe(settings.response_queue, _on_response)
        request = ExpressionRequest(expression_id="CLIENT-1_expr_1", expression="(1")
        broker.publish(settings.request_queue, request.model_dump_json().encode())
        assert done.wait(timeout=5)
        raise KeyboardInterrupt

    monkeypatch.setattr("distcalc._wait_for_interrupt", _one_round_trip)
    monkeypatch.setattr(sys, "argv", ["distcalc", "dispatcher"])

    distcalc.main()

    [response] = responses
    assert response.error.code.value == "PARSE_ERROR"


def test_worker_command_unreachable_broker_exits_1(monkeypatch):
    def _refuse(settings):
        raise TransportError("connection refused")

    monkeypatch.setattr("runtime.connect_amqp", _refuse)

    assert _run_cli(monkeypatch, "worker", "--operation", "add") == 1


def test_eval_command_amqp_uses_client_runtime(monkeypatch, capsys):
    from runtime import build_runtime

    monkeypatch.setattr("runtime.connect_runtime", lambda settings: build_runtime(settings))

    assert _run_cli(monkeypatch, "eval", "--expr", "2*3", "--amqp") == 0
    assert "= 6" in capsys.readouterr().out
