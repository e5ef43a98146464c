"""
Scripted platform clients and a pipeline harness for handler tests.

The fakes expose the same coroutine methods as MetaAdsClient and
ShopifyClient and return ApiResponse objects, so handlers run unchanged.
"""
import json
from collections import defaultdict

from marketsync.connectors.base_client import ApiResponse
from marketsync.services.bulk_poller import BulkOperationPoller
from marketsync.services.etl_ledger import EtlLedger
from marketsync.services.job_queue import JobQueue
from marketsync.services.sync_handlers import SyncHandlers
from marketsync.services.sync_orchestrator import SyncOrchestrator
from marketsync.services.worker import WorkerPool


def ok(data):
    return ApiResponse(success=True, data=data, status_code=200)


def rate_limited(seconds=120):
    return ApiResponse(success=False, error="rate limit reached", rate_limited=True, retry_after_seconds=seconds)


def unauthorized():
    return ApiResponse(success=False, error="HTTP 401: Invalid OAuth access token", status_code=401)


class FakeMeta:
    """Meta client double; queue overrides per method in `scripted`."""

    def __init__(self):
        self.calls = defaultdict(list)
        self.scripted = defaultdict(list)

    def _next(self, method, default):
        if self.scripted[method]:
            return self.scripted[method].pop(0)
        return default

    async def fetch_insights(self, tenant_id, account_id, since, until):
        self.calls["fetch_insights"].append((since, until))
        rows = [{"ad_id": "1", "date_start": since.isoformat(), "spend": "5.00", "impressions": "100"}]
        return self._next("fetch_insights", ok(rows))

    async def fetch_campaign_tree(self, tenant_id, account_id):
        self.calls["fetch_campaign_tree"].append(account_id)
        tree = {"campaigns": [{"id": "10", "name": "Prospecting", "status": "ACTIVE"}],
                "adsets": [{"id": "20", "campaign_id": "10", "name": "Broad"}]}
        return self._next("fetch_campaign_tree", ok(tree))

    async def fetch_demographics(self, tenant_id, account_id, since, until):
        self.calls["fetch_demographics"].append((since, until))
        rows = [{"date_start": until.isoformat(), "age": "25-34", "gender": "female", "spend": "3.10"}]
        return self._next("fetch_demographics", ok(rows))


BULK_RESULTS = {
    "orders": [
        {"id": "gid://shopify/Order/5001", "createdAt": "2024-01-05T10:00:00Z",
         "totalPriceSet": {"shopMoney": {"amount": "40.00"}}},
        {"id": "gid://shopify/LineItem/1", "quantity": 1, "__parentId": "gid://shopify/Order/5001"},
        {"id": "gid://shopify/Order/5002", "createdAt": "2024-01-06T10:00:00Z",
         "totalPriceSet": {"shopMoney": {"amount": "15.00"}}},
    ],
    "customers": [{"id": "gid://shopify/Customer/7", "email": "a@example.com"}],
    "products": [{"id": "gid://shopify/Product/55", "title": "Tee", "status": "ACTIVE"}],
}


class FakeShopify:
    """
    Shopify client double with an in-memory bulk operation registry.

    Each export reports RUNNING for `polls_before_done` status checks and
    then COMPLETED; entities listed in `stuck` never finish. The current
    operation is the latest export started (RUNNING until it finishes or
    is cancelled) unless `current` is set.
    """

    def __init__(self, polls_before_done=1, stuck=()):
        self.calls = defaultdict(list)
        self.scripted = defaultdict(list)
        self.polls_before_done = polls_before_done
        self.stuck = set(stuck)
        self.operations = {}
        self.current = None

    def _next(self, method, default):
        if self.scripted[method]:
            return self.scripted[method].pop(0)
        return default

    async def fetch_orders(self, tenant_id, created_at_min=None, created_at_max=None, updated_at_min=None):
        self.calls["fetch_orders"].append((created_at_min, created_at_max))
        orders = [{"id": 9001, "created_at": created_at_min.isoformat(), "updated_at": created_at_min.isoformat(),
                   "total_price": "12.00", "line_items": [{"id": 1, "quantity": 1, "price": "12.00"}]}]
        return self._next("fetch_orders", ok(orders))

    async def fetch_customers(self, tenant_id, updated_at_min=None):
        self.calls["fetch_customers"].append(updated_at_min)
        return self._next("fetch_customers", ok([{"id": 7, "email": "a@example.com", "updated_at": "2024-01-01T00:00:00Z"}]))

    async def fetch_checkouts(self, tenant_id, created_at_min=None):
        self.calls["fetch_checkouts"].append(created_at_min)
        return self._next("fetch_checkouts", ok([]))

    def running_operations(self):
        return [op_id for op_id, op in self.operations.items() if op["status"] == "RUNNING"]

    async def get_current_bulk_operation(self, tenant_id):
        self.calls["get_current_bulk_operation"].append(tenant_id)
        current = self.current
        if current is None and self.operations:
            operation_id = list(self.operations)[-1]
            current = {"id": operation_id, "status": self.operations[operation_id]["status"]}
        return self._next("get_current_bulk_operation", ok(current))

    async def start_bulk_export(self, tenant_id, entity, since=None):
        self.calls["start_bulk_export"].append(entity)
        scripted = self._next("start_bulk_export", None)
        if scripted is not None:
            return scripted
        operation_id = f"gid://shopify/BulkOperation/{len(self.operations) + 1}"
        self.operations[operation_id] = {"entity": entity, "polls": 0, "status": "RUNNING", "since": since}
        return ok({"id": operation_id, "status": "CREATED"})

    async def get_bulk_operation(self, tenant_id, operation_id):
        self.calls["get_bulk_operation"].append(operation_id)
        operation = self.operations[operation_id]
        operation["polls"] += 1
        finished = operation["entity"] not in self.stuck and operation["polls"] > self.polls_before_done
        if operation["status"] == "RUNNING" and finished:
            operation["status"] = "COMPLETED"
        done = operation["status"] == "COMPLETED"
        return ok({
            "id": operation_id,
            "status": operation["status"],
            "objectCount": str(len(BULK_RESULTS[operation["entity"]])),
            "errorCode": None,
            "url": f"https://storage.example.com/{operation['entity']}.jsonl" if done else None,
        })

    async def cancel_bulk_operation(self, tenant_id, operation_id):
        self.calls["cancel_bulk_operation"].append(operation_id)
        scripted = self._next("cancel_bulk_operation", None)
        if scripted is not None:
            return scripted
        if operation_id in self.operations:
            self.operations[operation_id]["status"] = "CANCELED"
        if self.current and self.current.get("id") == operation_id:
            self.current = None
        return ok({"id": operation_id, "status": "CANCELING"})

    async def download_bulk_result(self, tenant_id, url):
        self.calls["download_bulk_result"].append(url)
        entity = url.rsplit("/", 1)[-1].split(".")[0]
        return ok("\n".join(json.dumps(r) for r in BULK_RESULTS[entity]))


class Pipeline:
    """Queue, ledger, orchestrator and worker pool wired to fake clients."""

    def __init__(self, now, meta=None, shopify=None, poll_budget=5):
        self.now = now
        self.meta = meta or FakeMeta()
        self.shopify = shopify or FakeShopify()
        self.queue = JobQueue(clock=now)
        self.ledger = EtlLedger()
        self.orchestrator = SyncOrchestrator(queue=self.queue, ledger=self.ledger)
        poller = BulkOperationPoller(queue=self.queue, ledger=self.ledger, max_attempts=poll_budget)
        self.handlers = SyncHandlers(
            queue=self.queue,
            ledger=self.ledger,
            client_factory=self.client_for,
            poller=poller,
            orchestrator=self.orchestrator,
        )
        self.handlers.backfill.sleep = self._no_sleep
        self.pool = WorkerPool(queue=self.queue, ledger=self.ledger, concurrency=1, worker_id="test")
        for kind, handler in self.handlers.handlers().items():
            self.pool.register(kind, handler)

    @staticmethod
    async def _no_sleep(seconds):
        return None

    def client_for(self, connection):
        return self.meta if connection.platform == "meta" else self.shopify

    async def settle(self, step_seconds=300, max_steps=60):
        """Run the queue, jumping the clock past delays, until nothing is left."""
        totals = defaultdict(int)
        for _ in range(max_steps):
            summary = await self.pool.drain()
            for key, value in summary.items():
                totals[key] += value
            counts = self.queue.counts()
            if not counts["queued"] and not counts["active"]:
                break
            self.now.advance(step_seconds)
        return dict(totals)
