"""Unit tests for the ORM models in hivecast_relay.models.

These tests check table names, uniqueness constraints and the
column lengths the converter relies on.
"""

import pytest
from sqlalchemy.exc import IntegrityError

from hivecast_relay import models


def test_table_names():
    """Model classes expose expected __tablename__ values."""
    assert models.DeliveryToken.__tablename__ == "relay_token"
    assert models.UserLink.__tablename__ == "relay_user_link"
    assert models.DeliveryLogEntry.__tablename__ == "relay_delivery_log"


def test_one_token_per_fid(session_factory):
    """The fid column is unique so each fid holds at most one token."""
    with session_factory() as session:
        session.add(models.DeliveryToken(fid=1, token="a", endpoint_url="https://x.io"))
        session.add(models.DeliveryToken(fid=1, token="b", endpoint_url="https://x.io"))
        with pytest.raises(IntegrityError):
            session.commit()


def test_log_columns_fit_notification_limits():
    """Title and body columns match the notification length caps."""
    table = models.DeliveryLogEntry.__table__
    assert table.c.title.type.length == 32
    assert table.c.body.type.length == 128


def test_user_link_defaults(session_factory):
    with session_factory() as session:
        link = models.UserLink(source_username="alice")
        session.add(link)
        session.commit()
        session.refresh(link)

        assert link.active is True
        assert link.scheduled_enabled is False
        assert link.scheduled_hour == 7
        assert link.scheduled_minute == 20
        assert link.last_scheduled_event_id == 0
        assert link.linked_at is not None
