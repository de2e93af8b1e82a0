"""
Tests for the domain event system
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import Mock

from origination.events import DomainEvent, EventPayload, EventDispatcher


def make_event(event_type=DomainEvent.APPLICATION_SUBMITTED, entity_id="APP001", **data):
    return EventPayload(event_type=event_type, entity_type="application", entity_id=entity_id, data=data)


class TestEventPayload:
    """Test EventPayload functionality"""

    def test_event_payload_creation(self):
        event = make_event(to_status="SUBMITTED")

        assert event.event_type == DomainEvent.APPLICATION_SUBMITTED
        assert event.entity_id == "APP001"
        assert event.data == {"to_status": "SUBMITTED"}
        assert event.timestamp.tzinfo is not None
        assert event.event_id

    def test_event_payload_serialization(self):
        """Test to_dict and from_dict"""
        timestamp = datetime(2026, 3, 2, 10, 30, tzinfo=timezone.utc)
        event = EventPayload(
            event_type=DomainEvent.COUNTER_OFFER_SENT,
            entity_type="application",
            entity_id="APP001",
            data={"amount": Decimal("30000"), "term_months": 18},
            timestamp=timestamp,
            event_id="EVT001"
        )

        data = event.to_dict()
        assert data["event_type"] == "counter_offer.sent"
        assert data["data"]["amount"] == "30000"
        assert data["timestamp"] == timestamp.isoformat()

        restored = EventPayload.from_dict(data)
        assert restored.event_type == DomainEvent.COUNTER_OFFER_SENT
        assert restored.timestamp == timestamp
        assert restored.event_id == "EVT001"


class TestEventDispatcher:
    """Test EventDispatcher functionality"""

    def test_subscribe_and_publish_single_event(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.APPLICATION_SUBMITTED, handler)

        event = make_event()
        dispatcher.publish(event)

        handler.assert_called_once_with(event)

    def test_handlers_only_receive_their_event_type(self):
        dispatcher = EventDispatcher()
        approved, rejected = Mock(), Mock()
        dispatcher.subscribe(DomainEvent.APPLICATION_APPROVED, approved)
        dispatcher.subscribe(DomainEvent.APPLICATION_REJECTED, rejected)

        dispatcher.publish(make_event(DomainEvent.APPLICATION_APPROVED))

        approved.assert_called_once()
        rejected.assert_not_called()

    def test_global_handler_receives_all_events(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe_all(handler)

        dispatcher.publish_many([
            make_event(DomainEvent.STATUS_CHANGED),
            make_event(DomainEvent.APPLICATION_SUBMITTED),
        ])

        assert [call.args[0].event_type for call in handler.call_args_list] == [
            DomainEvent.STATUS_CHANGED, DomainEvent.APPLICATION_SUBMITTED
        ]

    def test_unsubscribe_works(self):
        dispatcher = EventDispatcher()
        handler, global_handler = Mock(), Mock()
        dispatcher.subscribe(DomainEvent.APPLICATION_CANCELLED, handler)
        dispatcher.subscribe_all(global_handler)

        dispatcher.unsubscribe(DomainEvent.APPLICATION_CANCELLED, handler)
        dispatcher.unsubscribe_all(global_handler)
        dispatcher.publish(make_event(DomainEvent.APPLICATION_CANCELLED))

        handler.assert_not_called()
        global_handler.assert_not_called()

    def test_unsubscribe_unknown_handler_is_harmless(self):
        dispatcher = EventDispatcher()
        dispatcher.unsubscribe(DomainEvent.APPLICATION_SYNCED, Mock())
        dispatcher.unsubscribe_all(Mock())

    def test_handler_exceptions_dont_break_publisher(self):
        dispatcher = EventDispatcher()
        failing = Mock(side_effect=RuntimeError("subscriber down"))
        working = Mock()
        dispatcher.subscribe(DomainEvent.APPLICATION_APPROVED, failing)
        dispatcher.subscribe(DomainEvent.APPLICATION_APPROVED, working)

        dispatcher.publish(make_event(DomainEvent.APPLICATION_APPROVED))

        failing.assert_called_once()
        working.assert_called_once()

    def test_handler_may_subscribe_while_publishing(self):
        dispatcher = EventDispatcher()
        late = Mock()

        def subscriber(event):
            dispatcher.subscribe(DomainEvent.APPLICATION_SUBMITTED, late)

        dispatcher.subscribe(DomainEvent.APPLICATION_SUBMITTED, subscriber)
        dispatcher.publish(make_event())

        late.assert_not_called()
        dispatcher.publish(make_event())
        late.assert_called_once()

    def test_handler_counts(self):
        dispatcher = EventDispatcher()
        dispatcher.subscribe(DomainEvent.APPLICATION_APPROVED, Mock())
        dispatcher.subscribe(DomainEvent.APPLICATION_APPROVED, Mock())
        dispatcher.subscribe(DomainEvent.ANALYST_ASSIGNED, Mock())
        dispatcher.subscribe_all(Mock())

        assert dispatcher.get_handler_count(DomainEvent.APPLICATION_APPROVED) == 2
        assert dispatcher.get_handler_count() == 4
        assert set(dispatcher.get_subscribed_events()) == {
            DomainEvent.APPLICATION_APPROVED, DomainEvent.ANALYST_ASSIGNED
        }

    def test_clear_all_handlers(self):
        dispatcher = EventDispatcher()
        dispatcher.subscribe(DomainEvent.APPLICATION_APPROVED, Mock())
        dispatcher.subscribe_all(Mock())

        dispatcher.clear()

        assert dispatcher.get_handler_count() == 0
        assert dispatcher.get_subscribed_events() == []
