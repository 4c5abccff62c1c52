"""Tests for the startup check of ORM relationships against database cascades."""

import logging
import sys
import os
from unittest.mock import patch

# Add the backend directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.models import cascade_validator
from app.models.cascade_validator import validate_cascade_relationships, check_cascade_relationships


class TestCascadeValidator:

    def test_models_are_consistent(self):
        assert validate_cascade_relationships() == []

    def test_logs_success(self, caplog):
        with caplog.at_level(logging.INFO, logger=cascade_validator.__name__):
            check_cascade_relationships()
        assert "Cascade relationships validated" in caplog.text

    def test_logs_each_error(self, caplog):
        errors = ["first problem", "second problem"]
        with patch.object(cascade_validator, "validate_cascade_relationships", return_value=errors):
            with caplog.at_level(logging.ERROR, logger=cascade_validator.__name__):
                check_cascade_relationships()
        assert "first problem" in caplog.text
        assert "second problem" in caplog.text
