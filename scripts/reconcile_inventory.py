"""Audit reserved stock against live holds and order totals against their lines."""

import argparse
import asyncio
import json
import sys

from shopcore.common.db import build_engine, build_session_factory
from shopcore.common.config import settings
from shopcore.services.orders.service import OrderService
from shopcore.services.payments.gateways.registry import GatewayRegistry
from shopcore.services.payments.service import PaymentOrchestrator
from shopcore.services.reservations.service import ReservationManager


async def run(dsn: str) -> dict:
    engine = build_engine(dsn)
    session_factory = build_session_factory(engine)
    reservations = ReservationManager(session_factory)
    orders = OrderService(session_factory, reservations, PaymentOrchestrator(GatewayRegistry()))
    try:
        return {
            "inventory_drift": await reservations.audit(),
            "order_totals": await orders.audit_totals(),
        }
    finally:
        await engine.dispose()


def main() -> None:
    """CLI entrypoint for reconciliation checks."""

    parser = argparse.ArgumentParser(description="Check inventory and order totals for drift.")
    parser.add_argument("--dsn", default=settings.postgres_dsn)
    args = parser.parse_args()

    report = asyncio.run(run(args.dsn))
    print(json.dumps(report, indent=2))
    if report["inventory_drift"] or report["order_totals"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
