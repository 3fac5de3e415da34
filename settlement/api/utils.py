from __future__ import annotations

import time

from fastapi import Header

from settlement.services import SettlementServices, get_services


def request_services(x_id_token: str | None = Header(default=None)) -> SettlementServices:
    return get_services().for_identity(x_id_token)


def elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
