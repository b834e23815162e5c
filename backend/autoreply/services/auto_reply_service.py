# /autoreply/services/auto_reply_service.py

import asyncio
import logging
from typing import Any, Dict, Optional

from autoreply.config import strings
from autoreply.models.config import KnowledgeBase
from autoreply.models.domain import Decision, DecisionKind, InboundMessage
from autoreply.services import business_hours
from autoreply.services.db_service import db_service
from autoreply.services.inheritance_service import inheritance_service
from autoreply.services.response_service import response_generator
from autoreply.services.rule_service import match_rule
from autoreply.services.whatsapp_service import whatsapp_service
from autoreply.utils.errors import GenerationFailed, PersistenceError
from autoreply.utils.metrics import decision_counter

# The auto-reply state machine. States are checked in a fixed order and the
# first one that applies ends the run:
#   no knowledge base -> disabled -> after hours -> rule matched -> generated
# A failed generation raises GenerationFailed; every other outcome is a Decision.

logger = logging.getLogger(__name__)

RULE_CONFIDENCE = 1.0


class AutoReplyEngine:
    def __init__(self, inheritance=None, generator=None, db=None, dispatcher=None, sleep=asyncio.sleep):
        self.inheritance = inheritance or inheritance_service
        self.generator = generator or response_generator
        self.db = db or db_service
        self.dispatcher = dispatcher or whatsapp_service
        self.sleep = sleep

    async def decide(self, message: InboundMessage, record_stats: bool = True) -> Decision:
        """
        Run the state machine for one inbound message. Performs no delivery.
        Raises GenerationFailed when the generative fallback fails.
        """
        base: Dict[str, Any] = {"inbound_message_id": message.id, "tenant_id": message.tenant_id}

        kb = await self.inheritance.resolve_knowledge_base(message.tenant_id)
        if kb is None:
            logger.info(f"No active knowledge base for tenant {message.tenant_id}")
            return self._finish(Decision(kind=DecisionKind.NO_KNOWLEDGE_BASE, **base))

        base.update(knowledge_base_id=kb.id, response_delay=kb.response_settings.response_delay)
        try:
            decision = await self._decide_with_knowledge_base(kb, message, base)
        except GenerationFailed:
            decision_counter.labels(kind=DecisionKind.GENERATION_FAILED.value).inc()
            if record_stats:
                await self._record_usage(kb, success=False)
            raise

        if record_stats:
            await self._record_usage(kb, success=True)
        return self._finish(decision)

    async def _decide_with_knowledge_base(self, kb: KnowledgeBase, message: InboundMessage,
                                          base: Dict[str, Any]) -> Decision:
        if not kb.response_settings.auto_reply_enabled:
            return Decision(kind=DecisionKind.AUTO_REPLY_DISABLED, **base)

        hours = kb.business_hours
        if hours.enabled:
            reason = business_hours.closure_reason(hours, message.received_at_utc)
            if reason is not None:
                logger.debug(f"Tenant {message.tenant_id} is closed ({reason.value})")
                return Decision(
                    kind=DecisionKind.AFTER_HOURS,
                    message=business_hours.closed_message(hours, reason),
                    is_auto_reply=True,
                    **base,
                )

        rule = match_rule(message.text, kb.auto_reply_rules)
        if rule is not None:
            return Decision(
                kind=DecisionKind.RULE_MATCHED,
                message=rule.response,
                is_auto_reply=True,
                matched_rule_id=rule.id,
                confidence=RULE_CONFIDENCE,
                **base,
            )

        reply = await self.generator.generate(
            kb, message.text, message.sender_display_name, now=message.received_at_utc
        )
        return Decision(
            kind=DecisionKind.GENERATED,
            message=reply.text,
            is_auto_reply=True,
            confidence=reply.confidence,
            **base,
        )

    def _finish(self, decision: Decision) -> Decision:
        decision_counter.labels(kind=decision.kind.value).inc()
        return decision

    async def _record_usage(self, kb: KnowledgeBase, success: bool):
        if not kb.id:
            return
        try:
            await self.db.record_kb_usage(kb.id, success)
        except PersistenceError as e:
            logger.warning(f"Could not update usage stats for knowledge base {kb.id}: {e}")

    async def process_inbound(self, message: InboundMessage) -> Decision:
        """
        Decide, record and deliver the reply for one inbound message. A message
        id that already has a recorded decision returns that decision without
        deciding or sending again.
        """
        existing = await self.db.get_decision(message.id)
        if existing:
            logger.info(f"Message {message.id} already decided ({existing.kind.value}); skipping")
            return existing

        try:
            decision = await self.decide(message)
        except GenerationFailed as e:
            logger.warning(f"Auto-reply generation failed for message {message.id}: {e.reason}")
            failed = Decision(
                kind=DecisionKind.GENERATION_FAILED,
                knowledge_base_id=e.knowledge_base_id,
                inbound_message_id=message.id,
                tenant_id=message.tenant_id,
                needs_human_followup=True,
            )
            stored, inserted = await self.db.record_decision(failed)
            if inserted:
                await self.db.flag_for_human_followup(
                    message.conversation_id, message.tenant_id, strings.HUMAN_FOLLOWUP_REASON, message.id
                )
            return stored

        stored, inserted = await self.db.record_decision(decision)
        if not inserted:
            logger.info(f"Message {message.id} was decided concurrently; not sending again")
            return stored
        if stored.has_reply:
            return await self._dispatch(message, stored)
        return stored

    async def _dispatch(self, message: InboundMessage, decision: Decision) -> Decision:
        if decision.response_delay:
            await self.sleep(decision.response_delay)

        delivery_id: Optional[str] = await self.dispatcher.send(message.sender_address, decision.message)
        if not delivery_id:
            logger.warning(f"Auto-reply for message {message.id} was not delivered")
            return decision

        await self.db.mark_decision_delivered(message.id, delivery_id)
        return decision.model_copy(update={"delivery_id": delivery_id})


auto_reply_engine = AutoReplyEngine()
