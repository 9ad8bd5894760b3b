#!/usr/bin/env python3
"""
distcalc.py — CLI narzędzie DistCalc.

Domyślnie działa lokalnie — uruchamia w procesie broker in-memory, dispatcher
i workery operacji. Z --url rozmawia z uruchomionym serwerem API.
Z --amqp jest tylko klientem RabbitMQ; dispatcher i workery chodzą jako
osobne procesy (podkomendy dispatcher / worker).

Konfiguracja: zmienne środowiskowe z prefiksem DISTCALC_ lub plik .env.

Podkomendy:
    compile     — pokaż tokeny, postfix i kroki wyrażenia (bez wykonywania)
    eval        — policz wyrażenie (broker, --sync: transport synchroniczny,
                  --amqp: RabbitMQ, --url: API)
    repl        — interaktywna pętla wyrażeń
    bench       — policz wyrażenie N razy, pokaż przepustowość i opóźnienia
    dispatcher  — dispatcher kroków nad RabbitMQ
    worker      — worker operacji nad RabbitMQ (--operation add|...|all)
    health      — sprawdź stan serwera API

Użycie:
    python distcalc.py compile --expr "((4+3)*2)/5"
    python distcalc.py eval --expr "10+20*3"
    python distcalc.py eval --expr "10+20*3" --sync
    python distcalc.py eval --expr "5/0" --url http://localhost:8000
    python distcalc.py repl
    python distcalc.py bench --expr "(15-5)/2" --count 500

    # RabbitMQ, każdy komponent w osobnym terminalu
    python distcalc.py dispatcher
    python distcalc.py worker --operation multiply
    python distcalc.py worker --operation all
    python distcalc.py eval --expr "((4+3)*2)/5" --amqp
"""
from __future__ import annotations

import argparse
import logging
import sys
import time
from typing import Any

import httpx
from rich import box
from rich.console import Console
from rich.table import Table


# -- helpers ---------------------------------------------------------------

_CONSOLE: Console | None = None


def _console() -> Console:
    global _CONSOLE
    if _CONSOLE is None:
        _CONSOLE = Console(highlight=False)
    return _CONSOLE


def _fmt_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(value)


def _print_kv_table(title: str, rows: list[tuple[str, Any]]) -> None:
    table = Table(title=title, box=box.ASCII, show_header=False, pad_edge=False)
    table.add_column("Key", no_wrap=True, style="bold cyan")
    table.add_column("Value")
    for key, value in rows:
        table.add_row(str(key), str(value))
    _console().print(table)


def _print_steps_table(steps: list[Any]) -> None:
    from contracts import StepRef

    table = Table(title=f"Steps [{len(steps)}]", box=box.ASCII)
    table.add_column("ID", no_wrap=True, style="cyan")
    table.add_column("Operation", no_wrap=True)
    table.add_column("A")
    table.add_column("B")
    table.add_column("Depends on", no_wrap=True)
    for step in steps:
        a, b = (
            f"ref step{op.step_id}" if isinstance(op, StepRef) else _fmt_number(op)
            for op in step.operands
        )
        deps = ", ".join(f"step{d}" for d in step.dependencies) or "-"
        table.add_row(f"step{step.step_id}", step.operation.value, a, b, deps)
    _console().print(table)


def _print_response(response: Any, elapsed_ms: float | None = None) -> None:
    suffix = f"  ({elapsed_ms:.1f} ms)" if elapsed_ms is not None else ""
    if response.error is None:
        _console().print(f"[green]= {_fmt_number(response.result)}[/green]{suffix}")
    else:
        _console().print(
            f"[red]error {response.error.code.value}:[/red] {response.error.message}{suffix}"
        )


def _read_expr(args: argparse.Namespace) -> str:
    expr = getattr(args, "expr", None) or sys.stdin.read().strip()
    if not expr:
        print("Błąd: podaj wyrażenie przez --expr lub stdin", file=sys.stderr)
        sys.exit(1)
    return expr


def _settings():
    from config import Settings

    settings = Settings()
    logging.basicConfig(level=settings.log_level.upper())
    return settings


def _transport_name(args: argparse.Namespace) -> str:
    if getattr(args, "amqp", False):
        return "amqp"
    return "loopback" if getattr(args, "sync", False) else "broker"


def _open_runtime(args: argparse.Namespace):
    """Lokalny runtime albo (--amqp) sam klient nad RabbitMQ."""
    from ports.transport import TransportError
    from runtime import build_runtime, connect_runtime

    settings = _settings()
    if not getattr(args, "amqp", False):
        return build_runtime(settings, synchronous=args.sync)
    try:
        return connect_runtime(settings)
    except TransportError as exc:
        print(f"Błąd połączenia z RabbitMQ: {exc}", file=sys.stderr)
        sys.exit(1)


def _connect_amqp(settings):
    from ports.transport import TransportError
    from runtime import connect_amqp

    try:
        return connect_amqp(settings)
    except TransportError as exc:
        print(f"Błąd połączenia z RabbitMQ: {exc}", file=sys.stderr)
        sys.exit(1)


def _wait_for_interrupt() -> None:
    while True:
        time.sleep(1.0)


def _serve(transport: Any, components: list[Any]) -> None:
    """Działa do Ctrl+C, potem zatrzymuje komponenty i zamyka transport."""
    try:
        _wait_for_interrupt()
    except KeyboardInterrupt:
        print("Zatrzymywanie...")
    finally:
        for component in components:
            component.stop()
        transport.close()


def _remote_evaluate(url: str, expr: str, deadline_ms: int | None) -> Any:
    from contracts import ExpressionResponse

    payload: dict[str, Any] = {"expression": expr}
    if deadline_ms is not None:
        payload["deadline_ms"] = deadline_ms
    timeout = (deadline_ms or 30_000) / 1000.0 + 5.0
    response = httpx.post(f"{url.rstrip('/')}/evaluate", json=payload, timeout=timeout)
    # Błędy wyrażeń przychodzą jako 4xx/5xx z ExpressionResponse w ciele
    try:
        return ExpressionResponse.model_validate(response.json())
    except ValueError:
        response.raise_for_status()
        raise


# -- podkomendy ------------------------------------------------------------

def _compile(args: argparse.Namespace) -> None:
    from adapters.expression_compiler.shunting_yard_compiler import (
        ShuntingYardCompiler,
        tokenize,
    )
    from ports.expression_compiler import CompileError

    expr = _read_expr(args)
    try:
        tokens = tokenize(expr)
        compiled = ShuntingYardCompiler().compile(expr)
    except CompileError as exc:
        print(f"Błąd parsowania: {exc}", file=sys.stderr)
        sys.exit(1)

    _print_kv_table("Expression", [
        ("infix", expr),
        ("tokens", " ".join(f"{t.text}:{t.kind.value}" for t in tokens)),
        ("postfix", compiled.postfix_text),
        ("steps", len(compiled.steps)),
    ])
    if compiled.steps:
        _print_steps_table(compiled.steps)
    else:
        print(f"Literał: {_fmt_number(compiled.literal)}")


def _eval(args: argparse.Namespace) -> None:
    expr = _read_expr(args)

    if args.url:
        t0 = time.monotonic()
        try:
            response = _remote_evaluate(args.url, expr, args.deadline_ms)
        except httpx.HTTPError as exc:
            print(f"Błąd połączenia z API: {exc}", file=sys.stderr)
            sys.exit(1)
        _print_response(response, (time.monotonic() - t0) * 1000)
        sys.exit(0 if response.error is None else 2)

    with _open_runtime(args) as rt:
        t0 = time.monotonic()
        response = rt.client.evaluate(expr, args.deadline_ms)
        _print_response(response, (time.monotonic() - t0) * 1000)
    sys.exit(0 if response.error is None else 2)


def _repl(args: argparse.Namespace) -> None:
    with _open_runtime(args) as rt:
        print(f"[{rt.client.client_id}] Wpisz wyrażenie (lub 'exit' aby zakończyć).")
        print("Przykłady: ((4+3)*2)/5, 10+20*3, (15-5)/2")
        while True:
            try:
                line = input("> ").strip()
            except EOFError:
                break
            if not line:
                continue
            if line.lower() in ("exit", "quit", "sair"):
                break
            t0 = time.monotonic()
            response = rt.client.evaluate(line, args.deadline_ms)
            _print_response(response, (time.monotonic() - t0) * 1000)


def _percentile(sorted_values: list[float], pct: float) -> float:
    if not sorted_values:
        return 0.0
    idx = min(len(sorted_values) - 1, int(round(pct / 100.0 * (len(sorted_values) - 1))))
    return sorted_values[idx]


def _bench(args: argparse.Namespace) -> None:
    expr = _read_expr(args)
    with _open_runtime(args) as rt:
        latencies: list[float] = []
        errors = 0
        t_start = time.monotonic()
        # Okna po --concurrency wyrażeń w locie naraz
        remaining = args.count
        while remaining > 0:
            batch = min(args.concurrency, remaining)
            remaining -= batch
            sent = []
            for _ in range(batch):
                sent.append((time.monotonic(), rt.client.send(expr, args.deadline_ms)))
            for t0, ticket in sent:
                response = rt.client.wait(ticket)
                latencies.append((time.monotonic() - t0) * 1000)
                if response.error is not None:
                    errors += 1
        total_s = time.monotonic() - t_start

    latencies.sort()
    _print_kv_table(f"Benchmark: {expr}", [
        ("transport", _transport_name(args)),
        ("expressions", args.count),
        ("errors", errors),
        ("total", f"{total_s:.3f} s"),
        ("throughput", f"{args.count / total_s:.1f} expr/s" if total_s > 0 else "-"),
        ("p50", f"{_percentile(latencies, 50):.2f} ms"),
        ("p95", f"{_percentile(latencies, 95):.2f} ms"),
        ("p99", f"{_percentile(latencies, 99):.2f} ms"),
        ("max", f"{latencies[-1]:.2f} ms" if latencies else "-"),
    ])


def _dispatcher(args: argparse.Namespace) -> None:
    from adapters.dispatcher.step_dispatcher import StepDispatcher
    from adapters.expression_compiler.shunting_yard_compiler import ShuntingYardCompiler

    settings = _settings()
    transport = _connect_amqp(settings)
    dispatcher = StepDispatcher(ShuntingYardCompiler(), transport, settings)
    dispatcher.start()
    print(f"Dispatcher: {settings.request_queue} → operacje → {settings.response_queue}. Ctrl+C kończy.")
    _serve(transport, [dispatcher])


def _worker(args: argparse.Namespace) -> None:
    from adapters.operation_worker.arithmetic_worker import ArithmeticWorker
    from contracts import Operation

    settings = _settings()
    operations = list(Operation) if args.operation == "all" else [Operation(args.operation)]
    transport = _connect_amqp(settings)
    workers = []
    for operation in operations:
        worker = ArithmeticWorker(operation, transport, settings)
        worker.start()
        workers.append(worker)
    print(f"Workery: {', '.join(w.queue for w in workers)}. Ctrl+C kończy.")
    _serve(transport, workers)


def _health(args: argparse.Namespace) -> None:
    from config import Settings

    url = (args.url or Settings().api_url).rstrip("/")
    try:
        response = httpx.get(f"{url}/health", timeout=5.0)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        print("status:  error", file=sys.stderr)
        print(f"api:     {exc}", file=sys.stderr)
        sys.exit(1)
    body = response.json()
    _print_kv_table("Health", [
        ("status", body.get("status")),
        ("api", url),
        ("pending", body.get("pending_expressions")),
        ("version", body.get("version")),
    ])


# -- main ------------------------------------------------------------------

def main() -> None:
    parser = argparse.ArgumentParser(
        prog="distcalc",
        description="DistCalc — CLI (lokalny runtime lub zdalne API)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # compile
    p = sub.add_parser("compile", help="Pokaż postfix i kroki wyrażenia")
    p.add_argument("--expr", "-e", help="Wyrażenie (lub stdin)")

    # eval
    p = sub.add_parser("eval", help="Policz wyrażenie")
    p.add_argument("--expr", "-e", help="Wyrażenie (lub stdin)")
    p.add_argument("--deadline-ms", type=int, default=None, metavar="MS")
    p.add_argument("--sync", action="store_true",
                   help="Transport synchroniczny zamiast brokera")
    p.add_argument("--amqp", action="store_true",
                   help="Klient RabbitMQ (dispatcher i workery jako osobne procesy)")
    p.add_argument("--url", help="Adres serwera API (zamiast lokalnego runtime)")

    # repl
    p = sub.add_parser("repl", help="Interaktywna pętla wyrażeń")
    p.add_argument("--deadline-ms", type=int, default=None, metavar="MS")
    p.add_argument("--sync", action="store_true")
    p.add_argument("--amqp", action="store_true")

    # bench
    p = sub.add_parser("bench", help="Benchmark: N wyrażeń przez runtime")
    p.add_argument("--expr", "-e", default="((4+3)*2)/5")
    p.add_argument("--count", "-n", type=int, default=200, metavar="N")
    p.add_argument("--concurrency", "-c", type=int, default=10, metavar="N")
    p.add_argument("--deadline-ms", type=int, default=None, metavar="MS")
    p.add_argument("--sync", action="store_true")
    p.add_argument("--amqp", action="store_true")

    # dispatcher
    sub.add_parser("dispatcher", help="Dispatcher nad RabbitMQ (osobny proces)")

    # worker
    p = sub.add_parser("worker", help="Worker operacji nad RabbitMQ (osobny proces)")
    p.add_argument("--operation", "-o", required=True,
                   choices=["add", "subtract", "multiply", "divide", "all"])

    # health
    p = sub.add_parser("health", help="Sprawdź serwer API")
    p.add_argument("--url", help="Adres serwera API (domyślnie DISTCALC_API_URL)")

    args = parser.parse_args()

    cmds = {
        "compile":    _compile,
        "eval":       _eval,
        "repl":       _repl,
        "bench":      _bench,
        "dispatcher": _dispatcher,
        "worker":     _worker,
        "health":     _health,
    }
    cmds[args.command](args)


if __name__ == "__main__":
    main()
