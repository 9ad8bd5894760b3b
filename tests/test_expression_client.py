from __future__ import annotations

from adapters.client.expression_client import ExpressionClient
from adapters.transport.loopback import LoopbackTransport
from config import Settings
from contracts import ErrorCode, ExpressionRequest, ExpressionResponse


def _echo_dispatcher(transport: LoopbackTransport, settings: Settings, answer: float):
    """Fałszywy dispatcher: odpowiada stałą wartością na każde wyrażenie."""

    def _handler(delivery):
        request = ExpressionRequest.model_validate_json(delivery.body)
        transport.publish(
            settings.response_queue,
            ExpressionResponse(expression_id=request.expression_id, result=answer)
            .model_dump_json().encode(),
        )
        delivery.ack()

    transport.subscribe(settings.request_queue, _handler)


def test_client_ids_carry_client_prefix():
    client = ExpressionClient(LoopbackTransport(), client_id="CLIENT-0007")

    assert client.next_expression_id() == "CLIENT-0007_expr_1"
    assert client.next_expression_id() == "CLIENT-0007_expr_2"


def test_client_matches_response_by_expression_id():
    settings = Settings()
    transport = LoopbackTransport()
    _echo_dispatcher(transport, settings, 7.0)
    client = ExpressionClient(transport, settings, client_id="CLIENT-1")
    client.start()

    response = client.evaluate("3+4")

    assert response == ExpressionResponse(expression_id="CLIENT-1_expr_1", result=7.0)
    assert client.waiting == 0


def test_client_times_out_without_response():
    settings = Settings(client_grace_ms=0)
    transport = LoopbackTransport()
    transport.subscribe(settings.request_queue, lambda d: d.ack())  # nikt nie odpowiada
    client = ExpressionClient(transport, settings, client_id="CLIENT-2")
    client.start()

    response = client.evaluate("1+1", deadline_ms=50)

    assert response.error.code == ErrorCode.DEADLINE_EXCEEDED
    assert client.waiting == 0


def test_client_drops_response_for_unknown_expression():
    settings = Settings()
    transport = LoopbackTransport()
    client = ExpressionClient(transport, settings, client_id="CLIENT-3")
    client.start()

    transport.publish(
        settings.response_queue,
        ExpressionResponse(expression_id="OTHER_expr_1", result=1.0).model_dump_json().encode(),
    )

    assert client.waiting == 0
