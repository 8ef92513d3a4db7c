"""
Request Deadline Tests
Blocking waits are clamped to the time left in the current request
"""

import pytest

from config import Config
from utils import request_deadline


class TestRequestDeadline:

    def test_outside_a_request_the_wait_is_unchanged(self):
        assert request_deadline.remaining() is None
        assert request_deadline.bounded_wait(60) == 60

    def test_wait_is_clamped_below_the_deadline(self, monkeypatch):
        monkeypatch.setattr(Config, "REQUEST_DEADLINE_MARGIN_SECONDS", 2.0)
        token = request_deadline.start(30)
        try:
            bounded = request_deadline.bounded_wait(60)
        finally:
            request_deadline.reset(token)

        assert 27.5 < bounded <= 28.0, "Wait should end a margin before the 30s deadline"
        assert request_deadline.remaining() is None, "Reset should clear the deadline"

    def test_short_deadline_uses_proportional_margin(self):
        token = request_deadline.start(1.0)
        try:
            bounded = request_deadline.bounded_wait(60)
        finally:
            request_deadline.reset(token)

        assert 0.8 < bounded <= 0.9, "A 1s deadline keeps a 10% margin"

    def test_shorter_wait_is_kept(self):
        token = request_deadline.start(30)
        try:
            assert request_deadline.bounded_wait(5) == 5
        finally:
            request_deadline.reset(token)

    @pytest.mark.parametrize("seconds", [0.0, 0.01])
    def test_expired_deadline_never_goes_negative(self, seconds):
        token = request_deadline.start(seconds)
        try:
            assert 0.0 <= request_deadline.bounded_wait(60) < 0.01
        finally:
            request_deadline.reset(token)
