"""
Locust Load Test Suite

Run scenarios:
  locust -f locustfile.py --tags contention   # Test oversell on the last seats
  locust -f locustfile.py --tags throughput   # Test availability cache
  locust -f locustfile.py --tags edge         # Test bad input
  locust -f locustfile.py                     # All tests

Targets are taken from the environment so the suite runs against seeded data:
  LOAD_TICKET_ID, LOAD_DATE (YYYY-MM-DD), LOAD_TIME_SLOT, LOAD_VARIANT_ID

Tokens are minted locally with the shared SECRET_KEY, the same way the
identity provider signs them.
"""

import os
import random
import uuid
from datetime import datetime, timedelta, timezone

from locust import HttpUser, task, between, tag, events

from sparkpay.core.security import create_access_token

TICKET_ID = int(os.getenv("LOAD_TICKET_ID", "1"))
VISIT_DATE = os.getenv(
    "LOAD_DATE",
    (datetime.now(timezone.utc) + timedelta(days=7)).date().isoformat(),
)
TIME_SLOT = os.getenv("LOAD_TIME_SLOT", "all-day")
VARIANT_ID = int(os.getenv("LOAD_VARIANT_ID", "1"))


def auth_headers() -> dict:
    token = create_access_token({"sub": f"load-{uuid.uuid4().hex[:10]}"})
    return {"Authorization": f"Bearer {token}"}


def customer() -> dict:
    n = random.randint(10000, 99999)
    return {
        "customer_name": f"Load User {n}",
        "customer_email": f"load_{n}@test.com",
        "customer_phone": "081234567890",
    }


@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    print("\n" + "=" * 60)
    print(f"TARGET: ticket {TICKET_ID} on {VISIT_DATE} slot {TIME_SLOT}, variant {VARIANT_ID}")
    print("=" * 60)


class ContentionUser(HttpUser):
    """
    TEST 1: Contention - many buyers, few remaining seats

    Run: locust -f locustfile.py --tags contention -u 100 -r 50 --run-time 30s

    After test, verify no bucket is oversold:
      SELECT * FROM ticket_availabilities
      WHERE reserved_capacity + sold_capacity > total_capacity;
    Should return no rows.
    """
    wait_time = between(0, 0.1)

    def on_start(self):
        self.headers = auth_headers()

    @tag("contention")
    @task(3)
    def checkout_last_seats(self):
        """All users fight for the same bucket."""
        with self.client.post(
            "/api/v1/checkout/tickets",
            json={
                **customer(),
                "items": [{
                    "ticket_id": TICKET_ID,
                    "date": VISIT_DATE,
                    "time_slot": TIME_SLOT,
                    "quantity": 1,
                }],
            },
            headers=self.headers,
            name="/api/v1/checkout/tickets",
            catch_response=True,
        ) as resp:
            # 409 is the expected answer once the bucket is full; 502 when the
            # sandbox gateway throttles us
            if resp.status_code in (201, 409, 502):
                resp.success()
            else:
                resp.failure(f"Unexpected: {resp.status_code}")

    @tag("contention")
    @task(1)
    def checkout_last_units(self):
        with self.client.post(
            "/api/v1/checkout/products",
            json={**customer(), "items": [{"product_variant_id": VARIANT_ID, "quantity": 1}]},
            headers=self.headers,
            name="/api/v1/checkout/products",
            catch_response=True,
        ) as resp:
            if resp.status_code in (201, 409, 502):
                resp.success()
            else:
                resp.failure(f"Unexpected: {resp.status_code}")


class ThroughputUser(HttpUser):
    """
    TEST 2: Throughput - availability cache effectiveness

    Run twice:
      1. With Redis: locust -f locustfile.py --tags throughput -u 100 -r 20 --run-time 60s
      2. Without Redis: REDIS_ENABLED=false, run again
    """
    wait_time = between(0.1, 0.5)

    @tag("throughput", "read")
    @task(10)
    def availability(self):
        self.client.get(
            f"/api/v1/tickets/{TICKET_ID}/availability?date={VISIT_DATE}",
            name="/api/v1/tickets/{id}/availability",
        )

    @tag("throughput")
    @task(1)
    def health_check(self):
        self.client.get("/health")


class EdgeCaseUser(HttpUser):
    """
    TEST 3: Edge cases - Bad input handling

    Run: locust -f locustfile.py --tags edge -u 20 -r 5 --run-time 30s

    System should NOT crash, return proper error codes.
    """
    wait_time = between(0.5, 1.5)

    def on_start(self):
        self.headers = auth_headers()

    def _expect(self, resp, codes):
        if resp.status_code in codes:
            resp.success()
        else:
            resp.failure(f"Expected {codes}, got {resp.status_code}")

    @tag("edge")
    @task
    def unknown_ticket(self):
        with self.client.post(
            "/api/v1/checkout/tickets",
            json={**customer(), "items": [{
                "ticket_id": 999999, "date": VISIT_DATE, "time_slot": "all-day", "quantity": 1,
            }]},
            headers=self.headers,
            catch_response=True,
        ) as resp:
            self._expect(resp, (400,))

    @tag("edge")
    @task
    def zero_quantity(self):
        with self.client.post(
            "/api/v1/checkout/tickets",
            json={**customer(), "items": [{
                "ticket_id": TICKET_ID, "date": VISIT_DATE, "time_slot": TIME_SLOT, "quantity": 0,
            }]},
            headers=self.headers,
            catch_response=True,
        ) as resp:
            self._expect(resp, (400,))

    @tag("edge")
    @task
    def malformed_json(self):
        with self.client.post(
            "/api/v1/checkout/tickets",
            data="not json at all",
            headers={**self.headers, "Content-Type": "application/json"},
            catch_response=True,
        ) as resp:
            self._expect(resp, (400,))

    @tag("edge")
    @task
    def forged_webhook(self):
        """Unsigned notifications must never change state."""
        with self.client.post(
            "/api/v1/payments/webhook",
            json={
                "order_id": "SPK-0-FORGED",
                "status_code": "200",
                "gross_amount": "10000.00",
                "transaction_status": "settlement",
                "signature_key": "0" * 128,
            },
            catch_response=True,
        ) as resp:
            self._expect(resp, (403,))

    @tag("edge")
    @task
    def missing_auth(self):
        with self.client.post(
            "/api/v1/payments/sync",
            json={"order_number": "SPK-0-NOAUTH"},
            catch_response=True,
        ) as resp:
            self._expect(resp, (401,))
