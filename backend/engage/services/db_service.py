# /engage/services/db_service.py

import logging
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any

from engage.config.settings import settings
from engage.models.campaign import CampaignStatus, QueueStatus
from engage.models.common import parse_datetime
from engage.models.journey import EnrollmentStatus, ScheduledExecutionStatus
from engage.services.cache_service import cache_service
from engage.utils.circuit_breaker import RedisCircuitBreaker
from engage.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)

# Constants
DEFAULT_QUERY_LIMIT = 100
OPEN_ENROLLMENT_STATUSES = [EnrollmentStatus.ACTIVE.value, EnrollmentStatus.WAITING.value]


class DatabaseService:
    """
    Single access point for MongoDB. Every engine pass reads and writes through
    these methods so that tests can replace the whole persistence layer at one
    seam. Documents carry their own string `id` and a `store_id` tenant key;
    Mongo's `_id` never leaves this class.
    """

    def __init__(self, mongo_uri: str):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                maxPoolSize=settings.max_pool_size,
                minPoolSize=settings.min_pool_size,
                tls=settings.mongo_ssl,
                tz_aware=True,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000
            )
            self.db = self.client.get_default_database()
            self.circuit_breaker = RedisCircuitBreaker(cache_service.redis, "database")
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    # ==================== Helper Methods ====================

    @staticmethod
    def _strip_id(document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if document is not None:
            document.pop("_id", None)
        return document

    def _strip_ids(self, documents: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [self._strip_id(doc) for doc in documents]

    async def _safe_db_operation(self, operation, default_return: Any = None) -> Any:
        """
        Run a non-critical operation (audit trails, webhook logs) behind the
        circuit breaker. Failures are logged and swallowed.
        """
        try:
            return await self.circuit_breaker.call(operation)
        except Exception as e:
            logger.exception(f"Database operation failed: {type(e).__name__}")
            database_operations_counter.labels(operation="db_error", status="failed").inc()
            return default_return

    def _now_utc(self) -> datetime:
        return datetime.now(timezone.utc)

    # ==================== Index Management ====================

    async def create_indexes(self) -> None:
        """Create all necessary database indexes on startup."""
        indexes = [
            ("stores", [("id", 1)], {"unique": True}),
            ("stores", [("shop_domain", 1)], {}),
            ("journeys", [("id", 1)], {"unique": True}),
            ("journeys", [("store_id", 1), ("status", 1)], {}),
            ("journey_enrollments", [("id", 1)], {"unique": True}),
            ("journey_enrollments", [("journey_id", 1), ("customer_id", 1), ("entered_at", -1)], {}),
            ("journey_enrollments", [("metadata.whatsapp_message_id", 1)], {}),
            ("journey_enrollments", [("status", 1), ("waiting_for_event_timeout", 1)], {}),
            ("scheduled_executions", [("status", 1), ("resume_at", 1)], {}),
            ("scheduled_executions", [("enrollment_id", 1)], {}),
            ("journey_activity_log", [("enrollment_id", 1), ("event_type", 1)], {}),
            ("customers", [("store_id", 1), ("id", 1)], {"unique": True}),
            ("orders", [("store_id", 1), ("id", 1)], {"unique": True}),
            ("orders", [("store_id", 1), ("customer_id", 1), ("created_at", -1)], {}),
            ("checkouts", [("store_id", 1), ("completed_at", 1), ("updated_at", 1)], {}),
            ("campaigns", [("id", 1)], {"unique": True}),
            ("campaigns", [("store_id", 1), ("status", 1)], {}),
            ("campaign_logs", [("id", 1)], {"unique": True}),
            ("campaign_logs", [("campaign_id", 1), ("step_index", 1), ("follow_up_sent", 1), ("created_at", 1)], {}),
            ("campaign_logs", [("message_id", 1)], {}),
            ("campaign_logs", [("store_id", 1), ("status", 1), ("created_at", -1)], {}),
            ("campaign_follow_ups", [("campaign_id", 1), ("step_index", 1)], {"unique": True}),
            ("campaign_queue", [("status", 1), ("scheduled_at", 1)], {}),
            ("usage_metrics", [("store_id", 1), ("period", 1)], {"unique": True}),
            ("segments", [("id", 1)], {"unique": True}),
            ("segments", [("needs_update", 1)], {}),
            ("contacts", [("store_id", 1), ("phone", 1)], {"unique": True}),
            ("contacts", [("store_id", 1), ("last_message_at", -1)], {}),
            ("conversations", [("store_id", 1), ("phone", 1)], {"unique": True}),
            ("conversations", [("store_id", 1), ("last_message_at", -1)], {}),
            ("messages", [("wamid", 1)], {"sparse": True}),
            ("messages", [("conversation_id", 1), ("timestamp", -1)], {}),
            ("auto_reply_rules", [("store_id", 1), ("active", 1), ("priority", 1)], {}),
            ("webhook_logs", [("store_id", 1), ("received_at", -1)], {}),
            ("security_events", [("timestamp", -1)], {}),
        ]

        for collection, keys, options in indexes:
            try:
                await self.db[collection].create_index(keys, **options)
            except Exception as e:
                logger.error(f"Failed to create index on {collection} {keys}: {e}")

        logger.info("Database indexes created successfully.")

    async def health_check(self) -> bool:
        try:
            await self.client.admin.command('ping')
            return True
        except Exception as e:
            logger.error(f"MongoDB health check failed: {e}")
            return False

    # ==================== Stores ====================

    async def get_store_id_for_shop(self, shop_domain: Optional[str]) -> str:
        """Map a `*.myshopify.com` domain onto its tenant id, falling back to the default store."""
        if shop_domain:
            store = await self.db.stores.find_one({"shop_domain": shop_domain.lower()})
            if store:
                return store["id"]
        return settings.default_store_id

    # ==================== Journeys ====================

    async def create_journey(self, journey: Dict[str, Any]) -> Dict[str, Any]:
        await self.db.journeys.insert_one(dict(journey))
        return journey

    async def get_journey(self, journey_id: str, store_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        query = {"id": journey_id}
        if store_id:
            query["store_id"] = store_id
        return self._strip_id(await self.db.journeys.find_one(query))

    async def list_journeys(self, store_id: str) -> List[Dict[str, Any]]:
        cursor = self.db.journeys.find({"store_id": store_id}).sort("created_at", -1)
        return self._strip_ids(await cursor.to_list(length=DEFAULT_QUERY_LIMIT))

    async def get_active_journeys(self, store_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"status": "active"}
        if store_id:
            query["store_id"] = store_id
        return self._strip_ids(await self.db.journeys.find(query).to_list(length=None))

    async def update_journey(self, journey_id: str, store_id: str, fields: Dict[str, Any]) -> bool:
        result = await self.db.journeys.update_one(
            {"id": journey_id, "store_id": store_id},
            {"$set": {**fields, "updated_at": self._now_utc()}}
        )
        return result.matched_count > 0

    # ==================== Journey Enrollments ====================

    async def save_enrollment(self, enrollment: Dict[str, Any]) -> None:
        """Insert or fully replace an enrollment document."""
        await self.db.journey_enrollments.replace_one({"id": enrollment["id"]}, enrollment, upsert=True)

    async def get_enrollment(self, enrollment_id: str) -> Optional[Dict[str, Any]]:
        return self._strip_id(await self.db.journey_enrollments.find_one({"id": enrollment_id}))

    async def get_customer_enrollments(self, journey_id: str, customer_id: str) -> List[Dict[str, Any]]:
        """All enrollments of a customer in a journey, newest first."""
        cursor = self.db.journey_enrollments.find(
            {"journey_id": journey_id, "customer_id": customer_id}
        ).sort("entered_at", -1)
        return self._strip_ids(await cursor.to_list(length=DEFAULT_QUERY_LIMIT))

    async def list_enrollments(self, store_id: str, journey_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        cursor = self.db.journey_enrollments.find(
            {"store_id": store_id, "journey_id": journey_id}
        ).sort("entered_at", -1)
        return self._strip_ids(await cursor.to_list(length=limit))

    async def find_enrollment_by_message_id(self, wamid: str) -> Optional[Dict[str, Any]]:
        return self._strip_id(await self.db.journey_enrollments.find_one({
            "metadata.whatsapp_message_id": wamid,
            "status": {"$in": OPEN_ENROLLMENT_STATUSES},
        }))

    async def find_enrollments_waiting_for_event(
        self,
        store_id: str,
        phones: List[str],
        event: str
    ) -> List[Dict[str, Any]]:
        cursor = self.db.journey_enrollments.find({
            "store_id": store_id,
            "phone": {"$in": phones},
            "status": EnrollmentStatus.WAITING.value,
            "waiting_for_event": event,
        })
        return self._strip_ids(await cursor.to_list(length=DEFAULT_QUERY_LIMIT))

    async def get_timed_out_event_waits(self, now: datetime, limit: int) -> List[Dict[str, Any]]:
        cursor = self.db.journey_enrollments.find({
            "status": EnrollmentStatus.WAITING.value,
            "waiting_for_event": {"$ne": None},
            "waiting_for_event_timeout": {"$ne": None, "$lte": now},
        }).sort("waiting_for_event_timeout", 1)
        return self._strip_ids(await cursor.to_list(length=limit))

    async def get_goal_waiting_enrollments(self, limit: int) -> List[Dict[str, Any]]:
        cursor = self.db.journey_enrollments.find({
            "status": EnrollmentStatus.WAITING.value,
            "waiting_for_goal": True,
        }).sort("last_activity_at", 1)
        return self._strip_ids(await cursor.to_list(length=limit))

    # ==================== Scheduled Executions ====================

    async def create_scheduled_execution(self, execution: Dict[str, Any]) -> None:
        await self.db.scheduled_executions.insert_one(dict(execution))

    async def get_due_scheduled_executions(self, now: datetime, limit: int) -> List[Dict[str, Any]]:
        cursor = self.db.scheduled_executions.find({
            "status": ScheduledExecutionStatus.PENDING.value,
            "resume_at": {"$lte": now},
        }).sort("resume_at", 1)
        return self._strip_ids(await cursor.to_list(length=limit))

    async def mark_scheduled_execution(
        self,
        execution_id: str,
        status: str,
        now: datetime,
        error: Optional[str] = None,
        only_pending: bool = True
    ) -> bool:
        """
        Move an execution to a final status. With `only_pending` the update is
        conditional and returns False when another worker got there first.
        """
        query = {"id": execution_id}
        if only_pending:
            query["status"] = ScheduledExecutionStatus.PENDING.value
        result = await self.db.scheduled_executions.update_one(
            query,
            {"$set": {"status": status, "processed_at": now, "error": error}}
        )
        return result.modified_count > 0

    async def cancel_scheduled_executions(self, enrollment_id: str, now: datetime) -> int:
        result = await self.db.scheduled_executions.update_many(
            {"enrollment_id": enrollment_id, "status": ScheduledExecutionStatus.PENDING.value},
            {"$set": {"status": ScheduledExecutionStatus.CANCELLED.value, "processed_at": now}}
        )
        return result.modified_count

    # ==================== Journey Activity ====================

    async def log_journey_activity(self, activity: Dict[str, Any]) -> None:
        await self.db.journey_activity_log.insert_one(dict(activity))

    async def has_journey_activity(self, enrollment_id: str, event_type: str) -> bool:
        found = await self.db.journey_activity_log.find_one(
            {"enrollment_id": enrollment_id, "event_type": event_type},
            projection={"_id": 1}
        )
        return found is not None

    # ==================== Shopify Mirror ====================

    async def upsert_customer(self, store_id: str, customer: Dict[str, Any]) -> None:
        customer_id = customer.get("id")
        if customer_id is None:
            logger.warning("Attempted to save a customer without an id")
            return
        document = {**customer, "id": str(customer_id), "store_id": store_id}
        await self.db.customers.update_one(
            {"store_id": store_id, "id": str(customer_id)},
            {"$set": document},
            upsert=True
        )

    async def get_customer(self, store_id: str, customer_id: str) -> Optional[Dict[str, Any]]:
        return self._strip_id(await self.db.customers.find_one({"store_id": store_id, "id": str(customer_id)}))

    async def get_customers(self, store_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        cursor = self.db.customers.find({"store_id": store_id})
        return self._strip_ids(await cursor.to_list(length=limit))

    async def upsert_order(self, store_id: str, order: Dict[str, Any]) -> None:
        order_id = order.get("id")
        if order_id is None:
            logger.warning("Attempted to save an order without an id")
            return
        customer_id = (order.get("customer") or {}).get("id")
        document = {
            **order,
            "id": str(order_id),
            "store_id": store_id,
            "customer_id": str(customer_id) if customer_id is not None else None,
            "created_at": parse_datetime(order.get("created_at")) or self._now_utc(),
        }
        await self.db.orders.update_one({"store_id": store_id, "id": str(order_id)}, {"$set": document}, upsert=True)

    async def get_customer_orders_since(self, store_id: str, customer_id: str, since: datetime) -> List[Dict[str, Any]]:
        cursor = self.db.orders.find({
            "store_id": store_id,
            "customer_id": str(customer_id),
            "created_at": {"$gte": since},
        })
        return self._strip_ids(await cursor.to_list(length=DEFAULT_QUERY_LIMIT))

    async def get_order_times(self, store_id: str, limit: int = 500) -> List[datetime]:
        cursor = self.db.orders.find({"store_id": store_id}, projection={"created_at": 1}).sort("created_at", -1)
        return [doc["created_at"] for doc in await cursor.to_list(length=limit) if doc.get("created_at")]

    async def upsert_checkout(self, store_id: str, checkout: Dict[str, Any]) -> None:
        checkout_id = checkout.get("id")
        if checkout_id is None:
            logger.warning("Attempted to save a checkout without an id")
            return
        document = {
            **checkout,
            "id": str(checkout_id),
            "store_id": store_id,
            "updated_at": parse_datetime(checkout.get("updated_at")) or self._now_utc(),
            "completed_at": parse_datetime(checkout.get("completed_at")),
        }
        await self.db.checkouts.update_one({"store_id": store_id, "id": str(checkout_id)}, {"$set": document}, upsert=True)

    async def get_abandoned_checkouts(self, store_id: str, updated_before: datetime) -> List[Dict[str, Any]]:
        cursor = self.db.checkouts.find({
            "store_id": store_id,
            "completed_at": None,
            "updated_at": {"$lte": updated_before},
        })
        return self._strip_ids(await cursor.to_list(length=None))

    # ==================== Campaigns ====================

    async def create_campaign(self, campaign: Dict[str, Any]) -> Dict[str, Any]:
        await self.db.campaigns.insert_one(dict(campaign))
        return campaign

    async def get_campaign(self, campaign_id: str, store_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        query = {"id": campaign_id}
        if store_id:
            query["store_id"] = store_id
        return self._strip_id(await self.db.campaigns.find_one(query))

    async def list_campaigns(self, store_id: str) -> List[Dict[str, Any]]:
        cursor = self.db.campaigns.find({"store_id": store_id}).sort("created_at", -1)
        return self._strip_ids(await cursor.to_list(length=DEFAULT_QUERY_LIMIT))

    async def update_campaign(self, campaign_id: str, fields: Dict[str, Any]) -> None:
        await self.db.campaigns.update_one({"id": campaign_id}, {"$set": fields})

    async def increment_campaign(self, campaign_id: str, counters: Dict[str, float]) -> None:
        await self.db.campaigns.update_one({"id": campaign_id}, {"$inc": counters})

    # ==================== Campaign Follow-ups ====================

    async def create_follow_up(self, follow_up: Dict[str, Any]) -> Dict[str, Any]:
        await self.db.campaign_follow_ups.insert_one(dict(follow_up))
        return follow_up

    async def list_follow_ups(self, campaign_id: str) -> List[Dict[str, Any]]:
        cursor = self.db.campaign_follow_ups.find({"campaign_id": campaign_id}).sort("step_index", 1)
        return self._strip_ids(await cursor.to_list(length=None))

    async def get_active_follow_up_steps(self) -> List[Dict[str, Any]]:
        """
        Active follow-up steps whose campaign has been sent, ordered by
        campaign and step so earlier steps are processed first.
        """
        campaign_ids = await self.db.campaigns.distinct(
            "id", {"status": {"$in": [CampaignStatus.RUNNING.value, CampaignStatus.COMPLETED.value]}}
        )
        if not campaign_ids:
            return []
        cursor = self.db.campaign_follow_ups.find(
            {"campaign_id": {"$in": campaign_ids}, "active": True}
        ).sort([("campaign_id", 1), ("step_index", 1)])
        return self._strip_ids(await cursor.to_list(length=None))

    async def increment_follow_up(self, step_id: str, counters: Dict[str, int]) -> None:
        await self.db.campaign_follow_ups.update_one({"id": step_id}, {"$inc": counters})

    # ==================== Campaign Logs ====================

    async def create_campaign_log(self, log: Dict[str, Any]) -> None:
        await self.db.campaign_logs.insert_one(dict(log))

    async def get_campaign_step_logs(self, campaign_id: str, step_index: int = 0) -> List[Dict[str, Any]]:
        cursor = self.db.campaign_logs.find(
            {"campaign_id": campaign_id, "step_index": step_index},
            {"_id": 0, "customer_id": 1, "phone": 1, "email": 1, "status": 1},
        )
        return await cursor.to_list(length=None)

    async def find_follow_up_candidates(
        self,
        campaign_id: str,
        step_index: int,
        created_before: datetime,
        condition_filter: Dict[str, Any],
        limit: int
    ) -> List[Dict[str, Any]]:
        """
        Logs of the previous step that are old enough, have not triggered a
        follow-up yet and satisfy the step's engagement condition.
        """
        query = {
            "campaign_id": campaign_id,
            "step_index": step_index,
            "follow_up_sent": False,
            "created_at": {"$lte": created_before},
            **condition_filter,
        }
        cursor = self.db.campaign_logs.find(query).sort("created_at", 1)
        return self._strip_ids(await cursor.to_list(length=limit))

    async def mark_follow_up_sent(self, log_id: str, now: datetime) -> bool:
        result = await self.db.campaign_logs.update_one(
            {"id": log_id, "follow_up_sent": False},
            {"$set": {"follow_up_sent": True, "follow_up_sent_at": now}}
        )
        return result.modified_count > 0

    async def update_campaign_log(self, log_id: str, fields: Dict[str, Any]) -> None:
        await self.db.campaign_logs.update_one({"id": log_id}, {"$set": fields})

    async def update_campaign_log_by_message_id(
        self, wamid: str, fields: Dict[str, Any], keep_statuses: Optional[List[str]] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Apply a delivery receipt to the campaign log that sent `wamid`; returns the log as it was before.
        A log whose current status is in `keep_statuses` keeps it while the other fields are still set.
        """
        update: Any = {"$set": fields}
        if keep_statuses and "status" in fields:
            staged = {key: {"$literal": value} for key, value in fields.items() if key != "status"}
            staged["status"] = {"$cond": [{"$in": ["$status", list(keep_statuses)]}, "$status", fields["status"]]}
            update = [{"$set": staged}]
        document = await self.db.campaign_logs.find_one_and_update(
            {"message_id": wamid},
            update,
            return_document=ReturnDocument.BEFORE
        )
        return self._strip_id(document)

    async def find_attribution_candidate(
        self,
        store_id: str,
        statuses: List[str],
        since: datetime,
        email: Optional[str],
        phone_last10: Optional[str],
        customer_id: Optional[str]
    ) -> Optional[Dict[str, Any]]:
        """Most recent unconverted campaign log that reached this customer after `since`."""
        identity = []
        if email:
            identity.append({"email": email})
        if phone_last10:
            identity.append({"phone": {"$regex": f"{phone_last10}$"}})
        if customer_id:
            identity.append({"customer_id": str(customer_id)})
        if not identity:
            return None

        cursor = self.db.campaign_logs.find({
            "store_id": store_id,
            "status": {"$in": statuses},
            "converted_at": None,
            "created_at": {"$gte": since},
            "$or": identity,
        }).sort("created_at", -1).limit(1)
        documents = await cursor.to_list(length=1)
        return self._strip_id(documents[0]) if documents else None

    async def mark_logs_replied(self, store_id: str, phone_last10: str, statuses: List[str], since: datetime, now: datetime) -> int:
        result = await self.db.campaign_logs.update_many(
            {
                "store_id": store_id,
                "phone": {"$regex": f"{phone_last10}$"},
                "status": {"$in": statuses},
                "created_at": {"$gte": since},
            },
            {"$set": {"status": "REPLIED", "replied_at": now}}
        )
        return result.modified_count

    async def get_read_times(self, store_id: str, limit: int = 500) -> List[datetime]:
        cursor = self.db.campaign_logs.find(
            {"store_id": store_id, "read_at": {"$ne": None}},
            projection={"read_at": 1}
        ).sort("read_at", -1)
        return [doc["read_at"] for doc in await cursor.to_list(length=limit)]

    # ==================== Campaign Queue ====================

    async def enqueue_campaign(self, item: Dict[str, Any]) -> None:
        await self.db.campaign_queue.insert_one(dict(item))

    async def claim_next_queue_item(self, now: datetime) -> Optional[Dict[str, Any]]:
        """Atomically move the earliest due PENDING item to PROCESSING."""
        document = await self.db.campaign_queue.find_one_and_update(
            {"status": QueueStatus.PENDING.value, "scheduled_at": {"$lte": now}},
            {"$set": {"status": QueueStatus.PROCESSING.value, "processing_started_at": now}},
            sort=[("scheduled_at", 1)],
            return_document=ReturnDocument.AFTER
        )
        return self._strip_id(document)

    async def update_queue_item(self, item_id: str, fields: Dict[str, Any]) -> None:
        await self.db.campaign_queue.update_one({"id": item_id}, {"$set": fields})

    async def delete_queue_item(self, item_id: str) -> None:
        await self.db.campaign_queue.delete_one({"id": item_id})

    async def increment_usage_metric(self, store_id: str, period: str, counters: Dict[str, int], now: datetime) -> None:
        await self.db.usage_metrics.update_one(
            {"store_id": store_id, "period": period},
            {"$inc": counters, "$set": {"updated_at": now}},
            upsert=True
        )

    # ==================== Segments ====================

    async def create_segment(self, segment: Dict[str, Any]) -> Dict[str, Any]:
        await self.db.segments.insert_one(dict(segment))
        return segment

    async def get_segment(self, segment_id: str, store_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        query = {"id": segment_id}
        if store_id:
            query["store_id"] = store_id
        return self._strip_id(await self.db.segments.find_one(query))

    async def list_segments(self, store_id: str) -> List[Dict[str, Any]]:
        cursor = self.db.segments.find({"store_id": store_id}).sort("created_at", -1)
        return self._strip_ids(await cursor.to_list(length=DEFAULT_QUERY_LIMIT))

    async def get_segments_needing_update(self) -> List[Dict[str, Any]]:
        return self._strip_ids(await self.db.segments.find({"needs_update": True}).to_list(length=None))

    async def update_segment(self, segment_id: str, fields: Dict[str, Any]) -> None:
        await self.db.segments.update_one({"id": segment_id}, {"$set": fields})

    async def flag_segments_for_update(self, store_id: str) -> int:
        result = await self.db.segments.update_many(
            {"store_id": store_id, "needs_update": False},
            {"$set": {"needs_update": True}}
        )
        return result.modified_count

    # ==================== Contacts & Inbox ====================

    async def get_contact(self, store_id: str, phone: str) -> Optional[Dict[str, Any]]:
        return self._strip_id(await self.db.contacts.find_one({"store_id": store_id, "phone": phone}))

    async def find_contact(
        self,
        store_id: str,
        phone: Optional[str] = None,
        customer_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Contact by exact phone first, then by linked Shopify customer."""
        if phone:
            contact = await self.get_contact(store_id, phone)
            if contact:
                return contact
        if customer_id:
            return self._strip_id(await self.db.contacts.find_one({"store_id": store_id, "customer_id": str(customer_id)}))
        return None

    async def upsert_contact_on_inbound(
        self,
        store_id: str,
        phone: str,
        name: Optional[str],
        now: datetime,
        new_id: str
    ) -> Dict[str, Any]:
        update: Dict[str, Any] = {
            "$set": {"last_message_at": now},
            "$setOnInsert": {"id": new_id, "created_at": now, "opted_out": False},
        }
        if name:
            update["$set"]["name"] = name
        document = await self.db.contacts.find_one_and_update(
            {"store_id": store_id, "phone": phone},
            update,
            upsert=True,
            return_document=ReturnDocument.AFTER
        )
        return self._strip_id(document)

    async def set_contact_opt_out(self, store_id: str, phone: str, opted_out: bool, now: datetime) -> None:
        await self.db.contacts.update_one(
            {"store_id": store_id, "phone": phone},
            {"$set": {"opted_out": opted_out, "opt_out_changed_at": now}}
        )

    async def count_contacts(self, store_id: str) -> int:
        return await self.db.contacts.count_documents({"store_id": store_id})

    async def count_contacts_messaged_since(self, store_id: str, since: datetime) -> int:
        return await self.db.contacts.count_documents({"store_id": store_id, "last_message_at": {"$gt": since}})

    async def upsert_conversation_on_inbound(
        self,
        store_id: str,
        contact_id: str,
        phone: str,
        preview: str,
        now: datetime,
        new_id: str
    ) -> Dict[str, Any]:
        document = await self.db.conversations.find_one_and_update(
            {"store_id": store_id, "phone": phone},
            {
                "$set": {"last_message_at": now, "last_message_preview": preview, "status": "open", "contact_id": contact_id},
                "$inc": {"unread_count": 1},
                "$setOnInsert": {"id": new_id},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER
        )
        return self._strip_id(document)

    async def get_conversation(self, store_id: str, conversation_id: str) -> Optional[Dict[str, Any]]:
        return self._strip_id(await self.db.conversations.find_one({"store_id": store_id, "id": conversation_id}))

    async def list_conversations(self, store_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        cursor = self.db.conversations.find({"store_id": store_id}).sort("last_message_at", -1)
        return self._strip_ids(await cursor.to_list(length=limit))

    async def record_outbound_on_conversation(self, conversation_id: str, preview: str, now: datetime) -> None:
        await self.db.conversations.update_one(
            {"id": conversation_id},
            {"$set": {"last_message_at": now, "last_message_preview": preview, "unread_count": 0}}
        )

    async def log_message(self, message: Dict[str, Any]) -> None:
        await self.db.messages.insert_one(dict(message))

    async def list_messages(self, conversation_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        cursor = self.db.messages.find({"conversation_id": conversation_id}).sort("timestamp", -1)
        messages = self._strip_ids(await cursor.to_list(length=limit))
        messages.reverse()
        return messages

    async def update_message_status(self, wamid: str, status: str, now: datetime) -> bool:
        result = await self.db.messages.update_one(
            {"wamid": wamid},
            {"$set": {"status": status, f"status_timestamps.{status}": now}}
        )
        return result.modified_count > 0

    async def get_active_auto_reply_rules(self, store_id: str) -> List[Dict[str, Any]]:
        cursor = self.db.auto_reply_rules.find({"store_id": store_id, "active": True}).sort("priority", 1)
        return self._strip_ids(await cursor.to_list(length=None))

    async def create_auto_reply_rule(self, rule: Dict[str, Any]) -> Dict[str, Any]:
        await self.db.auto_reply_rules.insert_one(dict(rule))
        return rule

    # ==================== Webhook & Security Logs ====================

    async def log_webhook(self, store_id: str, topic: str, summary: Dict[str, Any], now: datetime) -> None:
        """Append a webhook log entry and trim the store's log to the newest N entries."""
        async def _write():
            await self.db.webhook_logs.insert_one({
                "store_id": store_id, "topic": topic, "summary": summary, "received_at": now
            })
            stale = await self.db.webhook_logs.find(
                {"store_id": store_id}, projection={"_id": 1}
            ).sort("received_at", -1).skip(settings.webhook_log_limit).to_list(length=None)
            if stale:
                await self.db.webhook_logs.delete_many({"_id": {"$in": [doc["_id"] for doc in stale]}})

        await self._safe_db_operation(_write)

    async def log_security_event(self, event_type: str, ip_address: str, details: Dict[str, Any]) -> None:
        event_data = {
            "event_type": event_type,
            "ip_address": ip_address,
            "timestamp": self._now_utc(),
            "details": details
        }
        await self._safe_db_operation(lambda: self.db.security_events.insert_one(event_data))


# Globally accessible instance
db_service = DatabaseService(settings.mongo_uri)
