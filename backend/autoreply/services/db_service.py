# /autoreply/services/db_service.py

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import tenacity
from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from autoreply.config.settings import settings
from autoreply.models.config import ConfigurationRecord, KnowledgeBase, OwnerType, merge_documents
from autoreply.models.domain import Decision
from autoreply.utils.circuit_breaker import CircuitBreaker
from autoreply.utils.errors import NotFoundError, PersistenceError, ValidationError, VersionConflictError
from autoreply.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)

# Collections
SETTINGS_COLLECTION = "whatsapp_settings"
KNOWLEDGE_BASE_COLLECTION = "knowledge_bases"
DECISIONS_COLLECTION = "auto_reply_decisions"
CONVERSATIONS_COLLECTION = "conversations"

DEFAULT_QUERY_LIMIT = 100


def _is_transient_transaction_error(exc: BaseException) -> bool:
    return isinstance(exc, PyMongoError) and exc.has_error_label("TransientTransactionError")


class DatabaseService:
    """
    MongoDB persistence for configuration records, knowledge bases and
    auto-reply decisions.

    Reads and writes the rest of the system depends on raise PersistenceError;
    best-effort bookkeeping goes through _safe_db_operation and only logs.
    """

    def __init__(self, mongo_uri: str, client: Optional[AsyncIOMotorClient] = None):
        try:
            self.client = client or AsyncIOMotorClient(
                mongo_uri,
                maxPoolSize=settings.max_pool_size,
                minPoolSize=settings.min_pool_size,
                tls=settings.mongo_ssl,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000
            )
            self.db = self.client.get_default_database()
            self.circuit_breaker = CircuitBreaker(name="mongodb")
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    # ==================== Helper Methods ====================

    def _object_id(self, value: Any) -> Any:
        """Stored ids are ObjectIds; strings that are not valid ObjectIds are used as-is."""
        if isinstance(value, str) and ObjectId.is_valid(value):
            return ObjectId(value)
        return value

    def _serialize_id(self, document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if document and "_id" in document:
            document["_id"] = str(document["_id"])
        return document

    def _now_utc(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _db_call(self, operation_name: str, operation) -> Any:
        """Run an operation whose failure the caller must see, as PersistenceError."""
        try:
            result = await self.circuit_breaker.call(operation)
            database_operations_counter.labels(operation=operation_name, status="success").inc()
            return result
        except DuplicateKeyError:
            raise
        except Exception as e:
            database_operations_counter.labels(operation=operation_name, status="failed").inc()
            logger.error(f"Database operation '{operation_name}' failed: {type(e).__name__}: {e}")
            raise PersistenceError(f"{operation_name} failed: {e}") from e

    async def _safe_db_operation(self, operation, default_return: Any = None) -> Any:
        """Run a best-effort operation; failures are logged and default_return is returned."""
        try:
            return await self.circuit_breaker.call(operation)
        except Exception as e:
            logger.exception(f"Database operation failed: {type(e).__name__}")
            database_operations_counter.labels(operation="db_error", status="failed").inc()
            return default_return

    # ==================== Index Management ====================

    async def create_indexes(self) -> None:
        """Create all necessary database indexes on startup."""
        indexes = [
            (SETTINGS_COLLECTION, [("ownerId", 1), ("ownerType", 1)], {}),
            (SETTINGS_COLLECTION, [("ownerId", 1)],
             {"unique": True, "partialFilterExpression": {"ownerType": OwnerType.COACH.value},
              "name": "unique_coach_record"}),
            (SETTINGS_COLLECTION, [("ownerType", 1), ("isDefault", 1)],
             {"unique": True, "partialFilterExpression": {"isDefault": True},
              "name": "unique_default_per_owner_type"}),
            (KNOWLEDGE_BASE_COLLECTION, [("isDefault", 1)],
             {"unique": True, "partialFilterExpression": {"isDefault": True},
              "name": "unique_default_knowledge_base"}),
            (KNOWLEDGE_BASE_COLLECTION, [("isActive", 1)], {}),
            (DECISIONS_COLLECTION, [("inboundMessageId", 1)], {"unique": True}),
            (DECISIONS_COLLECTION, [("tenantId", 1), ("decidedAt", -1)], {}),
            (CONVERSATIONS_COLLECTION, [("needsHumanFollowup", 1)], {}),
        ]

        for collection, keys, options in indexes:
            try:
                await self.db[collection].create_index(keys, **options)
                logger.debug(f"Created index on {collection}: {keys}")
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

    # ==================== Configuration Records ====================

    def _to_record(self, document: Optional[Dict[str, Any]]) -> Optional[ConfigurationRecord]:
        if not document:
            return None
        return ConfigurationRecord.model_validate(self._serialize_id(document))

    async def get_settings_by_owner(self, owner_id: str) -> Optional[ConfigurationRecord]:
        document = await self._db_call(
            "get_settings",
            lambda: self.db[SETTINGS_COLLECTION].find_one({"ownerId": owner_id, "isActive": True}),
        )
        return self._to_record(document)

    async def get_settings_by_id(self, settings_id: str) -> Optional[ConfigurationRecord]:
        document = await self._db_call(
            "get_settings",
            lambda: self.db[SETTINGS_COLLECTION].find_one({"_id": self._object_id(settings_id)}),
        )
        return self._to_record(document)

    async def get_default_settings(self, owner_type: OwnerType) -> Optional[ConfigurationRecord]:
        document = await self._db_call(
            "get_default_settings",
            lambda: self.db[SETTINGS_COLLECTION].find_one(
                {"ownerType": owner_type.value, "isDefault": True, "isActive": True}
            ),
        )
        return self._to_record(document)

    async def list_settings(self, owner_type: OwnerType, limit: int = DEFAULT_QUERY_LIMIT) -> List[ConfigurationRecord]:
        documents = await self._db_call(
            "list_settings",
            lambda: self.db[SETTINGS_COLLECTION].find({"ownerType": owner_type.value}).to_list(length=limit),
        )
        return [self._to_record(document) for document in documents]

    async def create_settings_if_absent(self, record: ConfigurationRecord) -> ConfigurationRecord:
        """
        Insert record unless its owner already has one, and return whichever is stored.
        Safe under concurrent first access for the same owner.
        """
        now = self._now_utc()
        document = record.to_document()
        document.update(createdAt=now, updatedAt=now)
        collection = self.db[SETTINGS_COLLECTION]
        try:
            stored = await self._db_call(
                "create_settings",
                lambda: collection.find_one_and_update(
                    {"ownerId": record.owner_id, "ownerType": record.owner_type.value},
                    {"$setOnInsert": document},
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                ),
            )
        except DuplicateKeyError:
            # Lost the insert race to another request for the same owner.
            stored = await self._db_call(
                "get_settings",
                lambda: collection.find_one({"ownerId": record.owner_id, "ownerType": record.owner_type.value}),
            )
        return self._to_record(stored)

    async def save_settings(self, record: ConfigurationRecord) -> ConfigurationRecord:
        """
        Compare-and-swap write: succeeds only if the stored version still equals
        record.version, and increments it. Raises VersionConflictError otherwise.
        """
        if not record.id:
            raise ValidationError("Cannot save a configuration record without an id")

        document = record.to_document()
        document.pop("version", None)
        document["updatedAt"] = self._now_utc()

        result = await self._db_call(
            "save_settings",
            lambda: self.db[SETTINGS_COLLECTION].update_one(
                {"_id": self._object_id(record.id), "version": record.version},
                {"$set": document, "$inc": {"version": 1}},
            ),
        )
        if result.matched_count == 0:
            database_operations_counter.labels(operation="save_settings", status="conflict").inc()
            raise VersionConflictError(
                f"Configuration {record.id} changed since version {record.version} was read"
            )
        return record.model_copy(update={"version": record.version + 1})

    async def create_settings(self, record: ConfigurationRecord) -> ConfigurationRecord:
        """Insert a new record. It is never the default; use set_default_settings for that."""
        now = self._now_utc()
        document = record.to_document()
        document.update(isDefault=False, createdAt=now, updatedAt=now)
        result = await self._db_call(
            "create_settings",
            lambda: self.db[SETTINGS_COLLECTION].insert_one(document),
        )
        logger.info(f"Created {record.owner_type.value} configuration for {record.owner_id}")
        return record.model_copy(update={"id": str(result.inserted_id), "is_default": False, "created_at": now})

    async def deactivate_settings(self, record: ConfigurationRecord) -> None:
        """Soft delete. The default record of an owner type cannot be deactivated."""
        if record.is_default:
            raise ValidationError("The default configuration cannot be deleted; set another default first")

        result = await self._db_call(
            "deactivate_settings",
            lambda: self.db[SETTINGS_COLLECTION].update_one(
                {"_id": self._object_id(record.id), "isActive": True, "isDefault": {"$ne": True}},
                {"$set": {"isActive": False, "updatedAt": self._now_utc()}, "$inc": {"version": 1}},
            ),
        )
        if result.matched_count == 0:
            raise ValidationError(f"Configuration {record.id} became the default or was deleted concurrently")
        logger.info(f"Configuration {record.id} deactivated")

    @tenacity.retry(
        retry=tenacity.retry_if_exception(_is_transient_transaction_error),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=0.1, max=1),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _set_default_in_transaction(self, collection_name: str, target_id: Any, scope: Dict[str, Any],
                                          versioned: bool = False) -> None:
        """Unset every default in scope except target_id, then mark target_id default, atomically."""
        collection = self.db[collection_name]

        def change(is_default: bool) -> Dict[str, Any]:
            update: Dict[str, Any] = {"$set": {"isDefault": is_default, "updatedAt": self._now_utc()}}
            if versioned:
                update["$inc"] = {"version": 1}
            return update

        async with await self.client.start_session() as session:
            async with session.start_transaction():
                await collection.update_many(
                    {**scope, "isDefault": True, "_id": {"$ne": target_id}},
                    change(False),
                    session=session,
                )
                await collection.update_one({"_id": target_id}, change(True), session=session)

    async def set_default_settings(self, settings_id: str) -> ConfigurationRecord:
        record = await self.get_settings_by_id(settings_id)
        if not record:
            raise NotFoundError(f"Configuration {settings_id} not found")

        target_id = self._object_id(record.id)
        try:
            await self._set_default_in_transaction(
                SETTINGS_COLLECTION, target_id, {"ownerType": record.owner_type.value}, versioned=True
            )
        except PyMongoError as e:
            database_operations_counter.labels(operation="set_default_settings", status="failed").inc()
            raise PersistenceError(f"Could not set configuration {settings_id} as default: {e}") from e

        database_operations_counter.labels(operation="set_default_settings", status="success").inc()
        logger.info(f"Configuration {settings_id} is now the default for {record.owner_type.value}")
        return record.model_copy(update={"is_default": True, "version": record.version + 1})

    # ==================== Knowledge Bases ====================

    def _to_knowledge_base(self, document: Optional[Dict[str, Any]]) -> Optional[KnowledgeBase]:
        if not document:
            return None
        return KnowledgeBase.model_validate(self._serialize_id(document))

    async def get_knowledge_base(self, kb_id: str) -> Optional[KnowledgeBase]:
        document = await self._db_call(
            "get_knowledge_base",
            lambda: self.db[KNOWLEDGE_BASE_COLLECTION].find_one({"_id": self._object_id(kb_id)}),
        )
        return self._to_knowledge_base(document)

    async def get_default_knowledge_base(self) -> Optional[KnowledgeBase]:
        """The active default knowledge base, else the oldest active one, else None."""
        collection = self.db[KNOWLEDGE_BASE_COLLECTION]
        document = await self._db_call(
            "get_default_knowledge_base",
            lambda: collection.find_one({"isDefault": True, "isActive": True}),
        )
        if not document:
            document = await self._db_call(
                "get_default_knowledge_base",
                lambda: collection.find_one({"isActive": True}, sort=[("_id", 1)]),
            )
        return self._to_knowledge_base(document)

    async def list_knowledge_bases(self, limit: int = DEFAULT_QUERY_LIMIT) -> List[KnowledgeBase]:
        documents = await self._db_call(
            "list_knowledge_bases",
            lambda: self.db[KNOWLEDGE_BASE_COLLECTION].find({}).sort("_id", 1).to_list(length=limit),
        )
        return [self._to_knowledge_base(document) for document in documents]

    async def create_knowledge_base(self, kb: KnowledgeBase) -> KnowledgeBase:
        now = self._now_utc()
        document = kb.model_dump(by_alias=True, mode="json", exclude={"id", "is_default"})
        document.update(isDefault=False, createdAt=now, updatedAt=now)
        result = await self._db_call(
            "create_knowledge_base",
            lambda: self.db[KNOWLEDGE_BASE_COLLECTION].insert_one(document),
        )
        created = kb.model_copy(update={"id": str(result.inserted_id), "is_default": False})
        if kb.is_default:
            return await self.set_default_knowledge_base(created.id)
        return created

    async def update_knowledge_base(self, kb_id: str, updates: Dict[str, Any]) -> KnowledgeBase:
        """
        Partial update. `updates` holds camelCase fields; nested sections such as
        responseSettings are merged into the stored ones, so fields that are not
        sent keep their values. The merged result is validated before anything
        is written. The default flag can only change through
        set_default_knowledge_base.
        """
        existing = await self.get_knowledge_base(kb_id)
        if not existing:
            raise NotFoundError(f"Knowledge base {kb_id} not found")

        updates = {key: value for key, value in updates.items() if key not in ("_id", "isDefault", "stats")}
        if not updates:
            return existing

        merged = merge_documents(existing.model_dump(by_alias=True, mode="json"), updates)
        try:
            validated = KnowledgeBase.model_validate(merged)
        except ValueError as e:
            raise ValidationError(f"Invalid knowledge base update: {e}") from e

        validated_document = validated.model_dump(by_alias=True, mode="json")
        to_set = {key: validated_document[key] for key in updates}
        to_set["updatedAt"] = self._now_utc()
        await self._db_call(
            "update_knowledge_base",
            lambda: self.db[KNOWLEDGE_BASE_COLLECTION].update_one({"_id": self._object_id(kb_id)}, {"$set": to_set}),
        )
        return validated

    async def delete_knowledge_base(self, kb_id: str) -> None:
        existing = await self.get_knowledge_base(kb_id)
        if not existing:
            raise NotFoundError(f"Knowledge base {kb_id} not found")
        if existing.is_default:
            raise ValidationError("The default knowledge base cannot be deleted; set another default first")

        result = await self._db_call(
            "delete_knowledge_base",
            lambda: self.db[KNOWLEDGE_BASE_COLLECTION].delete_one(
                {"_id": self._object_id(kb_id), "isDefault": {"$ne": True}}
            ),
        )
        if result.deleted_count == 0:
            raise ValidationError("Knowledge base became the default while being deleted")
        logger.info(f"Knowledge base {kb_id} deleted")

    async def set_default_knowledge_base(self, kb_id: str) -> KnowledgeBase:
        kb = await self.get_knowledge_base(kb_id)
        if not kb:
            raise NotFoundError(f"Knowledge base {kb_id} not found")
        if not kb.is_active:
            raise ValidationError("An inactive knowledge base cannot be the default")

        try:
            await self._set_default_in_transaction(KNOWLEDGE_BASE_COLLECTION, self._object_id(kb.id), {})
        except PyMongoError as e:
            database_operations_counter.labels(operation="set_default_knowledge_base", status="failed").inc()
            raise PersistenceError(f"Could not set knowledge base {kb_id} as default: {e}") from e

        database_operations_counter.labels(operation="set_default_knowledge_base", status="success").inc()
        logger.info(f"Knowledge base {kb_id} is now the default")
        return kb.model_copy(update={"is_default": True})

    async def record_kb_usage(self, kb_id: str, success: bool) -> None:
        """
        Atomically bump the usage counters and derive successRate from the
        updated counters in the same update. Raises PersistenceError on failure.
        """
        def counter(field: str, increment: int) -> Dict[str, Any]:
            return {"$add": [{"$ifNull": [f"$stats.{field}", 0]}, increment]}

        pipeline = [
            {"$set": {
                "stats.totalReplies": counter("totalReplies", 1),
                "stats.successfulReplies": counter("successfulReplies", 1 if success else 0),
                "stats.failedReplies": counter("failedReplies", 0 if success else 1),
                "stats.lastUsed": self._now_utc(),
            }},
            {"$set": {
                "stats.successRate": {
                    "$multiply": [{"$divide": ["$stats.successfulReplies", "$stats.totalReplies"]}, 100]
                },
            }},
        ]
        result = await self._db_call(
            "record_kb_usage",
            lambda: self.db[KNOWLEDGE_BASE_COLLECTION].update_one({"_id": self._object_id(kb_id)}, pipeline),
        )
        if result.matched_count == 0:
            logger.warning(f"Usage recorded for unknown knowledge base {kb_id}")

    # ==================== Decisions ====================

    def _decision_document(self, decision: Decision) -> Dict[str, Any]:
        document = decision.model_dump(by_alias=True, mode="json")
        document["decidedAt"] = decision.decided_at
        return document

    async def get_decision(self, inbound_message_id: str) -> Optional[Decision]:
        document = await self._db_call(
            "get_decision",
            lambda: self.db[DECISIONS_COLLECTION].find_one({"inboundMessageId": inbound_message_id}),
        )
        return Decision.model_validate(document) if document else None

    async def record_decision(self, decision: Decision) -> Tuple[Decision, bool]:
        """
        Store the decision for its inbound message id unless one already exists.
        Returns the stored decision and whether this call inserted it.
        """
        if not decision.inbound_message_id:
            raise ValidationError("A decision can only be recorded for an inbound message id")

        try:
            result = await self._db_call(
                "record_decision",
                lambda: self.db[DECISIONS_COLLECTION].update_one(
                    {"inboundMessageId": decision.inbound_message_id},
                    {"$setOnInsert": self._decision_document(decision)},
                    upsert=True,
                ),
            )
            inserted = result.upserted_id is not None
        except DuplicateKeyError:
            inserted = False

        if inserted:
            return decision, True
        stored = await self.get_decision(decision.inbound_message_id)
        return (stored or decision), False

    async def mark_decision_delivered(self, inbound_message_id: str, delivery_id: str) -> bool:
        result = await self._safe_db_operation(
            lambda: self.db[DECISIONS_COLLECTION].update_one(
                {"inboundMessageId": inbound_message_id},
                {"$set": {"deliveryId": delivery_id, "deliveredAt": self._now_utc()}},
            )
        )
        return bool(result and result.modified_count)

    async def flag_for_human_followup(self, conversation_id: str, tenant_id: str, reason: str,
                                      inbound_message_id: Optional[str] = None) -> bool:
        result = await self._safe_db_operation(
            lambda: self.db[CONVERSATIONS_COLLECTION].update_one(
                {"_id": conversation_id},
                {"$set": {
                    "tenantId": tenant_id,
                    "needsHumanFollowup": True,
                    "followupReason": reason,
                    "followupMessageId": inbound_message_id,
                    "flaggedAt": self._now_utc(),
                }},
                upsert=True,
            )
        )
        if result is None:
            return False
        database_operations_counter.labels(operation="flag_for_human_followup", status="success").inc()
        return True


# Globally accessible instance
db_service = DatabaseService(settings.mongo_uri)
