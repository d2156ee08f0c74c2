from __future__ import annotations

import json

from builders import make_request
from orderflow.cli import _build_parser, run


def _run(service, *argv: str) -> int:
    return run(_build_parser().parse_args(list(argv)), service)


def test_cli_ship_refund_and_metrics(service, capsys):
    order = service.checkout(make_request()).result
    capsys.readouterr()

    assert _run(service, "ship", order.id, "--carrier", "UPS", "--tracking-number", "1Z1") == 0
    assert json.loads(capsys.readouterr().out)["status"] == "shipped"

    assert _run(service, "show", order.id) == 0
    assert json.loads(capsys.readouterr().out)["shipping"]["carrier"] == "UPS"

    assert _run(service, "metrics", "--period", "2000-01-01T00:00:00Z/2100-01-01T00:00:00Z") == 0
    assert json.loads(capsys.readouterr().out)["metrics"]["total_orders"] == 1


def test_cli_reports_errors_on_stderr(service, capsys):
    order = service.create_order(make_request()).result
    capsys.readouterr()

    assert _run(service, "refund", order.id, "--amount", "100", "--reason", "test") == 1
    captured = capsys.readouterr().err
    err = json.loads(captured[captured.index("{"):])
    assert err["error"] == "invalid_transition"
