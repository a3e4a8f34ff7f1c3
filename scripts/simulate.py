"""
Notification Burst Simulation Script

Fires a burst of concurrent test notifications at a running console API
and checks that the alert pipeline kept up: every notification unread,
one alert playing, background pushes rendered.
Run from project root: python scripts/simulate.py

Version: 1.0.0
"""

import argparse
import asyncio
import random
import sys
import time
from datetime import datetime
from typing import Any

import httpx

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_NOTIFICATIONS = 25

CUSTOMERS = ["John Smith", "Jane Garcia", "Mike Brown", "Sarah Davis", "Emma Wilson", "Tom Taylor"]
MESSAGES = [
    "Table 4 is waiting for the bill",
    "Delivery driver has arrived",
    "Customer asked for extra napkins",
    "Kitchen printer is out of paper",
]


# =============================================================================
# BURST
# =============================================================================

async def send_test_notification(
    client: httpx.AsyncClient,
    num: int
) -> dict[str, Any]:
    """Insert one test notification through the API."""
    start_time = time.time()

    try:
        response = await client.post(
            f"{API_BASE_URL}/api/notifications/test",
            json={"title": f"Test Notification #{num}", "message": random.choice(MESSAGES)},
            timeout=30.0
        )
        elapsed = round(time.time() - start_time, 3)

        if response.status_code == 201:
            return {
                "num": num,
                "success": True,
                "notification_id": response.json()["notification"]["id"],
                "time": elapsed,
            }
        return {
            "num": num,
            "success": False,
            "error": response.text[:100],
            "time": elapsed,
        }
    except httpx.HTTPError as e:
        return {
            "num": num,
            "success": False,
            "error": str(e)[:100],
            "time": round(time.time() - start_time, 3),
        }


async def run_simulation(num_notifications: int = TOTAL_NOTIFICATIONS) -> dict[str, Any]:
    """
    Run the burst and verify the alert state afterwards.

    Args:
        num_notifications: Number of concurrent test notifications
    """
    print("=" * 70)
    print("🔥 NOTIFICATION BURST - HIGH CONCURRENCY TEST")
    print("=" * 70)
    print(f"📋 Notifications: {num_notifications}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    async with httpx.AsyncClient() as client:
        before = (await client.get(f"{API_BASE_URL}/api/notifications")).json()["unread_count"]

        print("\n🚀 Firing test notifications...\n")
        start_time = time.time()
        results = await asyncio.gather(*[
            send_test_notification(client, i + 1) for i in range(num_notifications)
        ])
        total_time = round(time.time() - start_time, 2)

        # Give the change feed a moment to deliver the last inserts
        await asyncio.sleep(1.0)
        notifications = (await client.get(f"{API_BASE_URL}/api/notifications")).json()

    successful = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]
    expected_unread = before + len(successful)

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)

    print(f"\n✅ Inserted: {len(successful)}/{num_notifications}")
    print(f"❌ Failed: {len(failed)}/{num_notifications}")
    print(f"⏱️  Total Time: {total_time}s")

    if successful:
        times = [r["time"] for r in successful]
        print("\n📈 Performance Metrics:")
        print(f"   Average Response: {round(sum(times) / len(times), 3)}s")
        print(f"   Fastest: {min(times)}s")
        print(f"   Slowest: {max(times)}s")

    if failed:
        print("\n⚠️  Failed Details (showing first 5):")
        for f in failed[:5]:
            print(f"   #{f['num']}: {f.get('error', 'Unknown error')}")

    alert = notifications["alert"]
    unread_ok = notifications["unread_count"] >= expected_unread
    print("\n🔔 Alert State:")
    print(f"   Feed: {notifications['feed_status']}")
    print(f"   Phase: {alert['phase']} (playing: {alert['is_playing']})")
    print(f"   Unread: {notifications['unread_count']} (expected at least {expected_unread}) "
          f"{'✅' if unread_ok else '❌'}")
    for error in notifications["errors"]:
        print(f"   ⚠️ {error['kind']}: {error['message']}")

    print("=" * 70)

    return {
        "total": num_notifications,
        "successful": len(successful),
        "failed": len(failed),
        "total_time": total_time,
        "unread_ok": unread_ok,
        "is_playing": alert["is_playing"],
    }


# =============================================================================
# BACKGROUND PUSH FLOW
# =============================================================================

async def run_push_flow(num_pushes: int = 3) -> bool:
    """Enable background notifications, push a few orders, open the last alert."""
    print("\n" + "=" * 70)
    print("📨 BACKGROUND PUSH FLOW")
    print("=" * 70)

    async with httpx.AsyncClient(base_url=API_BASE_URL) as client:
        response = await client.post("/api/background/enable")
        if response.status_code != 200:
            print(f"   ❌ Enable failed: {response.text[:100]}")
            return False
        print(f"   ✅ Permission: {response.json()['permission']}")

        for i in range(num_pushes):
            payload = {
                "orderId": f"sim-{i + 1}",
                "orderNumber": f"ORD-{9000 + i}",
                "customerName": random.choice(CUSTOMERS),
                "amount": round(random.uniform(12, 80), 2),
            }
            data = (await client.post("/webhook/push", json=payload)).json()
            if data["shown"]:
                print(f"   ✅ {data['alert']['title']}: {data['alert']['body']}")
            else:
                print(f"   ⚠️ Push for {payload['orderNumber']} was not shown")

        alerts = (await client.get("/api/agent/alerts")).json()
        # Same-tag pushes replace each other, one alert stays open
        print(f"   Open alerts: {alerts['total']}")
        if not alerts["alerts"]:
            return False

        alert_id = alerts["alerts"][0]["id"]
        clicked = (await client.post(f"/api/agent/alerts/{alert_id}/click", params={"action": "view"})).json()
        print(f"   👆 View opened {clicked['url']}")

    print("=" * 70)
    return True


async def check_health() -> bool:
    """Pre-flight check before the burst."""
    print("\n" + "=" * 70)
    print("🧪 PRE-FLIGHT CHECK")
    print("=" * 70)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(f"{API_BASE_URL}/health")
        except httpx.HTTPError as e:
            print(f"   ❌ Console API unreachable: {e}")
            return False

        if response.status_code != 200:
            print(f"   ❌ Failed: {response.text}")
            return False

        data = response.json()
        print(f"   ✅ Status: {data.get('status')}")
        print(f"   Data Service: {data.get('data_service')}")
        print(f"   Feed: {data.get('feed_status')} (polling: {data.get('polling_active')})")
        print(f"   Background Agent: {data.get('background_agent')}")

    print("=" * 70)
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Notification Burst Simulation Script")
    parser.add_argument("--notifications", type=int, default=TOTAL_NOTIFICATIONS, help="Number of notifications")
    parser.add_argument("--push", action="store_true", help="Also run the background push flow")
    parser.add_argument("--skip-checks", action="store_true", help="Skip the pre-flight check")
    args = parser.parse_args()

    if not args.skip_checks and not asyncio.run(check_health()):
        print("\n❌ Pre-flight check failed. Start the console API first.")
        sys.exit(1)

    summary = asyncio.run(run_simulation(args.notifications))

    if args.push and not asyncio.run(run_push_flow()):
        sys.exit(1)

    sys.exit(0 if summary["failed"] == 0 and summary["unread_ok"] else 1)
