from __future__ import annotations

import argparse
import json
import sys

from orderflow.api.utils import iso, parse_period, serialize_order
from orderflow.core.config import get_settings
from orderflow.core.logging import configure_logging
from orderflow.domain.orders.commands import RefundRequest, TrackingInfoRequest
from orderflow.persistence.pg import init_db
from orderflow.services.orders import OrderService, ServiceResult, build_order_service


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Orderflow CLI")
    top = parser.add_subparsers(dest="command", required=True)

    metrics = top.add_parser("metrics", help="Order metrics, optionally for a period")
    metrics.add_argument("--period", default=None, help="ISO period: start/end")

    show = top.add_parser("show", help="Print one order")
    show.add_argument("order_id")

    refund = top.add_parser("refund", help="Refund part or all of an order")
    refund.add_argument("order_id")
    refund.add_argument("--amount", type=int, required=True, help="int minor units")
    refund.add_argument("--reason", required=True)
    refund.add_argument("--refund-id", default=None)
    refund.add_argument("--notes", default=None)

    ship = top.add_parser("ship", help="Attach tracking info and mark the order shipped")
    ship.add_argument("order_id")
    ship.add_argument("--carrier", required=True)
    ship.add_argument("--tracking-number", required=True)
    ship.add_argument("--tracking-url", default=None)

    return parser


def _emit(outcome: ServiceResult, render) -> int:
    if outcome.error is not None:
        print(json.dumps(outcome.error.to_dict(), ensure_ascii=False, indent=2), file=sys.stderr)
        return 1
    print(json.dumps(render(outcome.result), ensure_ascii=False, indent=2))
    return 0


def run(args: argparse.Namespace, service: OrderService) -> int:
    if args.command == "metrics":
        start = end = None
        if args.period:
            start, end = parse_period(args.period)
        return _emit(
            service.get_order_metrics(start, end),
            lambda metrics: {"period": {"start": iso(start), "end": iso(end)}, "metrics": metrics.to_dict()},
        )
    if args.command == "show":
        return _emit(service.get_order_by_id(args.order_id), serialize_order)
    if args.command == "refund":
        request = RefundRequest(amount=args.amount, reason=args.reason, refund_id=args.refund_id, notes=args.notes)
        return _emit(service.create_refund(args.order_id, request), serialize_order)
    if args.command == "ship":
        request = TrackingInfoRequest(
            carrier=args.carrier,
            tracking_number=args.tracking_number,
            tracking_url=args.tracking_url,
        )
        return _emit(service.add_tracking_info(args.order_id, request), serialize_order)
    raise ValueError(f"unsupported command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging()
    init_db()
    try:
        return run(args, build_order_service(get_settings()))
    except ValueError as exc:
        parser.error(str(exc))
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
