#!/usr/bin/env python3
"""
End-to-end smoke checks against a running order service.

Run:
  python e2e_smoke.py

Optional env:
  ORDER_BASE=http://localhost:8000
  SHELTER_ID=<id of a seeded shelter>   (enables the donation scenario)
  DEBUG=1
"""

from __future__ import annotations

import os
import sys
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests


# =========================
# Simple CLI UI (ANSI)
# =========================

class Style:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    GRAY = "\033[90m"


def section_title(text: str):
    print(f"\n{Style.BLUE}{Style.BOLD}== {text} =={Style.RESET}")


def info(msg: str):
    print(f"{Style.CYAN}ℹ {msg}{Style.RESET}")


def ok(msg: str):
    print(f"{Style.GREEN}✔ {msg}{Style.RESET}")


def fail(msg: str):
    print(f"{Style.RED}✘ {msg}{Style.RESET}")


# =========================
# Config
# =========================

ORDER_BASE = os.getenv("ORDER_BASE", "http://localhost:8000")
SHELTER_ID = os.getenv("SHELTER_ID")
DEBUG = os.getenv("DEBUG", "0").strip() in {"1", "true", "True", "YES", "yes"}

ITEMS = [{"name": "Veggie Wrap", "price": 7.5, "quantity": 2, "isVeg": True}]
ADDRESS = {"firstName": "Smoke", "lastName": "Test", "street": "1 Main St"}


def debug(msg: str):
    if DEBUG:
        print(f"{Style.GRAY}… {msg}{Style.RESET}")


@dataclass
class CheckResult:
    name: str
    success: bool
    details: str = ""


# =========================
# HTTP helpers
# =========================

def call(method: str, path: str, user_id: Optional[str] = None, **kwargs) -> Dict[str, Any]:
    kwargs.setdefault("timeout", 8)
    if user_id:
        kwargs.setdefault("headers", {})["X-User-Id"] = user_id
    debug(f"{method} {path} {kwargs}")
    resp = requests.request(method, ORDER_BASE + path, **kwargs)
    return resp.json()


def wait_for_health(timeout: int = 30) -> bool:
    start = time.time()
    while time.time() - start < timeout:
        try:
            if requests.get(ORDER_BASE + "/", timeout=3).status_code == 200:
                ok("order service is healthy.")
                return True
        except requests.exceptions.RequestException as e:
            debug(f"not ready: {e}")
        time.sleep(1)
    fail(f"order service did not become healthy in {timeout} seconds.")
    return False


def find_order(user_id: str, order_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    orders = call("POST", "/api/order/userorders", user_id).get("data") or []
    if order_id is None:
        return orders[0] if orders else None
    return next((o for o in orders if o["id"] == order_id), None)


def place_cod(user_id: str, amount: float) -> Optional[Dict[str, Any]]:
    body = call("POST", "/api/order/placecod", user_id, json={"items": ITEMS, "amount": amount, "address": ADDRESS})
    if not body.get("success"):
        fail(f"place failed: {body}")
        return None
    return find_order(user_id)


# =========================
# Scenarios
# =========================

def scenario_cancel_and_claim() -> CheckResult:
    section_title("Cancel and claim at a discount")
    owner, claimer = f"smoke-{uuid.uuid4()}", f"smoke-{uuid.uuid4()}"
    order = place_cod(owner, 15)
    if order is None:
        return CheckResult("Cancel and claim", False, "order not placed")

    cancel = call("POST", "/api/order/cancel_order", owner, json={"orderId": order["id"]})
    info(f"cancel → {cancel}")
    claim = call("POST", "/api/order/claim", claimer, json={"orderId": order["id"]})
    data = claim.get("data") or {}
    success = claim.get("success") and data.get("amount") == 10 and data.get("userId") == claimer
    return CheckResult("Cancel and claim", bool(success), f"claim={claim.get('message')} amount={data.get('amount')}")


def scenario_declined_payment() -> CheckResult:
    section_title("Declined card payment removes the order")
    owner = f"smoke-{uuid.uuid4()}"
    placed = call("POST", "/api/order/place", owner, json={"items": ITEMS, "amount": 20, "address": ADDRESS})
    info(f"session_url={placed.get('session_url')}")
    order = find_order(owner)
    if order is None:
        return CheckResult("Declined payment", False, "order not placed")
    verify = call("POST", "/api/order/verify", json={"orderId": order["id"], "success": "false"})
    still_there = find_order(owner, order["id"]) is not None
    return CheckResult("Declined payment", verify.get("message") == "Not Paid" and not still_there, str(verify))


def scenario_illegal_transition() -> CheckResult:
    section_title("Illegal admin transition is rejected")
    owner = f"smoke-{uuid.uuid4()}"
    order = place_cod(owner, 12)
    if order is None:
        return CheckResult("Illegal transition", False, "order not placed")
    resp = call("POST", "/api/order/status", json={"orderId": order["id"], "status": "delivered"})
    success = not resp.get("success") and "Illegal transition" in resp.get("message", "")
    return CheckResult("Illegal transition", success, resp.get("message", ""))


def scenario_donation() -> CheckResult:
    section_title("Donate a cancelled order")
    owner = f"smoke-{uuid.uuid4()}"
    order = place_cod(owner, 9)
    if order is None:
        return CheckResult("Donation", False, "order not placed")
    call("POST", "/api/order/cancel_order", owner, json={"orderId": order["id"]})
    first = call("POST", "/api/order/assign-shelter", json={"orderId": order["id"], "shelterId": SHELTER_ID})
    second = call("POST", "/api/order/assign-shelter", json={"orderId": order["id"], "shelterId": SHELTER_ID})
    success = first.get("success") and second.get("alreadyAssigned") is True
    return CheckResult("Donation", bool(success), f"first={first.get('message')} second={second.get('message')}")


# =========================
# Summary
# =========================

def print_results(results: List[CheckResult]):
    print(f"\n{Style.BOLD}================ RESULTS ================{Style.RESET}")
    for r in results:
        color = Style.GREEN if r.success else Style.RED
        print(f"{color}{'✅' if r.success else '❌'} {r.name}{Style.RESET}")
        if r.details:
            print(f"    {Style.DIM}{r.details}{Style.RESET}")
    passed = sum(1 for r in results if r.success)
    print(f"Total: {len(results)}  |  Passed: {Style.GREEN}{passed}{Style.RESET}  |  Failed: {Style.RED}{len(results) - passed}{Style.RESET}")


def main():
    if not wait_for_health():
        sys.exit(1)

    results = [scenario_cancel_and_claim(), scenario_declined_payment(), scenario_illegal_transition()]
    if SHELTER_ID:
        results.append(scenario_donation())
    else:
        info("SHELTER_ID not set; skipping donation scenario.")

    print_results(results)
    sys.exit(0 if all(r.success for r in results) else 1)


if __name__ == "__main__":
    main()
