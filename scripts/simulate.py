"""
Chaos Simulation Script

Fires concurrent wallet debits, order placements and status transitions
at a running API and checks that no money or transition is lost.
Run from project root: python scripts/simulate.py

Requires the server in development mode (admin self-registration).
"""

import argparse
import asyncio
import random
import sys
import time
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx

# Configuration
API_BASE_URL = "http://localhost:5001"
TOTAL_CUSTOMERS = 20
STARTING_CREDIT = 100

MENU_ITEMS = [
    {"menu_item_id": "m-paneer-tikka", "name": "Paneer Tikka", "price": 249},
    {"menu_item_id": "m-veg-biryani", "name": "Veg Biryani", "price": 199},
    {"menu_item_id": "m-butter-naan", "name": "Butter Naan", "price": 45},
    {"menu_item_id": "m-dal-makhani", "name": "Dal Makhani", "price": 179},
    {"menu_item_id": "m-gulab-jamun", "name": "Gulab Jamun", "price": 89},
    {"menu_item_id": "m-masala-chai", "name": "Masala Chai", "price": 39},
]

LIFECYCLE = ["CONFIRMED", "PREPARING", "READY", "OUT_FOR_DELIVERY", "COMPLETED"]


def headers(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id}


def generate_random_items() -> list[dict]:
    """Generate random order items."""
    picks = random.sample(MENU_ITEMS, random.randint(1, 3))
    return [dict(item, quantity=random.randint(1, 3)) for item in picks]


async def register(client: httpx.AsyncClient, phone: str, name: str, role: str = "USER") -> str:
    response = await client.post(
        f"{API_BASE_URL}/api/users",
        json={"phone": phone, "name": name, "role": role},
    )
    response.raise_for_status()
    return response.json()["data"]["id"]


# =============================================================================
# SCENARIOS
# =============================================================================

async def fund_customers(client: httpx.AsyncClient, admin_id: str, customers: list[str]) -> None:
    await asyncio.gather(*(
        client.post(
            f"{API_BASE_URL}/api/admin/wallet/{user_id}/credit",
            json={"amount": STARTING_CREDIT, "description": "Simulation top-up"},
            headers=headers(admin_id),
        )
        for user_id in customers
    ))


async def double_spend(client: httpx.AsyncClient, admin_id: str, user_id: str) -> int:
    """Two concurrent debits of 60 against a balance of 100; returns how many succeeded."""
    responses = await asyncio.gather(*(
        client.post(
            f"{API_BASE_URL}/api/admin/wallet/{user_id}/debit",
            json={"amount": 60, "description": "Simulation double spend"},
            headers=headers(admin_id),
        )
        for _ in range(2)
    ))
    return sum(1 for r in responses if r.status_code == 200)


async def place_order(client: httpx.AsyncClient, user_id: str) -> dict[str, Any]:
    start_time = time.time()
    response = await client.post(
        f"{API_BASE_URL}/api/orders",
        json={
            "items": generate_random_items(),
            "order_type": random.choice(["DINE_IN", "TAKEAWAY"]),
            "payment_method": "UPI",
        },
        headers=headers(user_id),
        timeout=30.0,
    )
    elapsed = round(time.time() - start_time, 3)
    if response.status_code == 201:
        data = response.json()["data"]
        return {"success": True, "id": data["id"], "code": data["order_code"],
                "total": Decimal(data["total_amount"]), "time": elapsed}
    return {"success": False, "error": response.text[:100], "time": elapsed}


async def race_transitions(client: httpx.AsyncClient, admin_id: str, order_id: str) -> int:
    """Fire the same CONFIRMED transition twice at once; returns how many succeeded."""
    responses = await asyncio.gather(*(
        client.patch(
            f"{API_BASE_URL}/api/orders/{order_id}/status",
            json={"status": "CONFIRMED"},
            headers=headers(admin_id),
        )
        for _ in range(2)
    ))
    return sum(1 for r in responses if r.status_code == 200)


async def complete_order(client: httpx.AsyncClient, admin_id: str, order_id: str) -> int:
    for status in LIFECYCLE[1:]:
        response = await client.patch(
            f"{API_BASE_URL}/api/orders/{order_id}/status",
            json={"status": status},
            headers=headers(admin_id),
        )
        response.raise_for_status()
    response = await client.get(f"{API_BASE_URL}/api/orders/{order_id}", headers=headers(admin_id))
    return len(response.json()["data"]["status_history"])


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(num_customers: int = TOTAL_CUSTOMERS) -> bool:
    print("=" * 70)
    print("🔥 CHAOS SIMULATION - HIGH CONCURRENCY TEST")
    print("=" * 70)
    print(f"👥 Customers: {num_customers}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    run_tag = random.randint(1000, 9999)
    problems = []

    async with httpx.AsyncClient(timeout=30.0) as client:
        response = await client.get(f"{API_BASE_URL}/health")
        print(f"\n1️⃣ Health: {response.json().get('status')}")

        admin_id = await register(client, f"90000{run_tag}0", "Sim Admin", role="ADMIN")
        customers = await asyncio.gather(*(
            register(client, f"9{run_tag}{i:05d}", f"Customer {i}")
            for i in range(num_customers)
        ))
        await fund_customers(client, admin_id, customers)
        print(f"2️⃣ Registered and funded {len(customers)} customers with {STARTING_CREDIT} each")

        wins = await asyncio.gather(*(double_spend(client, admin_id, c) for c in customers))
        bad = [c for c, w in zip(customers, wins) if w != 1]
        print(f"3️⃣ Double-spend race: {len(customers) - len(bad)}/{len(customers)} resolved correctly")
        if bad:
            problems.append(f"double spend allowed for {bad[:3]}")

        balances = await asyncio.gather(*(
            client.get(f"{API_BASE_URL}/api/wallet", headers=headers(c)) for c in customers
        ))
        wrong = [r.json()["data"]["balance"] for r in balances if Decimal(r.json()["data"]["balance"]) != 40]
        if wrong:
            problems.append(f"unexpected balances {wrong[:3]}")

        start_time = time.time()
        orders = await asyncio.gather(*(place_order(client, c) for c in customers))
        placed = [o for o in orders if o["success"]]
        print(f"4️⃣ Orders placed: {len(placed)}/{len(orders)} in {round(time.time() - start_time, 2)}s")
        codes = [o["code"] for o in placed]
        if len(set(codes)) != len(codes):
            problems.append("duplicate order codes issued")

        wins = await asyncio.gather(*(race_transitions(client, admin_id, o["id"]) for o in placed))
        raced = sum(1 for w in wins if w == 1)
        print(f"5️⃣ Transition race: {raced}/{len(placed)} orders confirmed exactly once")
        if raced != len(placed):
            problems.append("a transition was applied twice")

        histories = await asyncio.gather(*(complete_order(client, admin_id, o["id"]) for o in placed))
        complete = sum(1 for h in histories if h == 6)
        print(f"6️⃣ Completed with full history: {complete}/{len(placed)}")
        if complete != len(placed):
            problems.append("status history incomplete")

        if placed:
            revenue = sum(o["total"] for o in placed)
            avg_time = round(sum(o["time"] for o in placed) / len(placed), 3)
            print(f"\n📈 Average order response: {avg_time}s")
            print(f"   💰 Total order value: ₹{revenue}")

    print("\n" + "=" * 70)
    if problems:
        print("❌ PROBLEMS FOUND")
        for p in problems:
            print(f"   - {p}")
    else:
        print("✅ All invariants held")
    print("=" * 70)
    return not problems


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Chaos Simulation Script")
    parser.add_argument("--customers", type=int, default=TOTAL_CUSTOMERS, help="Number of customers")
    parser.add_argument("--url", default=API_BASE_URL, help="API base URL")
    args = parser.parse_args()

    API_BASE_URL = args.url
    ok = asyncio.run(run_simulation(num_customers=args.customers))
    sys.exit(0 if ok else 1)
