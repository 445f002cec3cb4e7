"""Unit tests for shared data models."""

from dataclasses import FrozenInstanceError
from datetime import datetime, timezone

import pytest

from shared.models import (
    NotionCredentials,
    TaskPriority,
    TaskSnapshot,
    TaskStatus,
    TaskType,
    priority_score,
)


class TestTaskPriority:
    """Tests for the star rating ordinal."""

    def test_scores_follow_star_count(self):
        assert TaskPriority.FOUR_STARS.score == 4
        assert TaskPriority.THREE_AND_HALF.score == 3
        assert TaskPriority.TWO_STARS.score == 2
        assert TaskPriority.ONE_STAR.score == 1

    def test_missing_priority_scores_zero(self):
        assert priority_score(None) == 0
        assert priority_score(TaskPriority.ONE_STAR) > priority_score(None)

    def test_values_are_notion_option_names(self):
        assert TaskPriority("★★★☆") is TaskPriority.THREE_AND_HALF
        assert TaskStatus("In Progress") is TaskStatus.IN_PROGRESS
        assert TaskType("NextAction") is TaskType.NEXT_ACTION


class TestTaskSnapshot:
    """Tests for TaskSnapshot dataclass."""

    def test_defaults(self):
        now = datetime(2024, 5, 1, tzinfo=timezone.utc)
        snapshot = TaskSnapshot(
            notion_id="page-1",
            name="Write report",
            status=TaskStatus.TODO,
            updated_at=now,
            created_at=now
        )

        assert snapshot.type is None
        assert snapshot.project_ids == []
        assert snapshot.bookmark_url is None

    def test_snapshot_is_immutable(self):
        now = datetime(2024, 5, 1, tzinfo=timezone.utc)
        snapshot = TaskSnapshot("page-1", "Task", TaskStatus.TODO, now, now)

        with pytest.raises(FrozenInstanceError):
            snapshot.name = "Changed"


class TestNotionCredentials:
    """Tests for credential usability."""

    @pytest.mark.parametrize("token,database_id,usable", [
        ("secret_abc", "db123", True),
        ("", "db123", False),
        ("secret_abc", "   ", False),
        ("  ", "", False),
    ])
    def test_usable(self, token, database_id, usable):
        credentials = NotionCredentials(token=token, database_id=database_id, notion_version="2022-06-28")
        assert credentials.usable is usable
