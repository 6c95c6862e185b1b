"""
Unit tests for the error handler and safe_operation.
"""

import unittest

from activitybot.core.errors import (
    CacheError, DatabaseError, ErrorCategory, ErrorHandler, ErrorSeverity, error_handler, safe_operation
)


class TestErrorHandler(unittest.TestCase):

    def test_bot_error_category_wins(self):
        handler = ErrorHandler()
        cause = ConnectionError("refused")

        with self.assertLogs("activitybot.error_handler", level="ERROR") as logs:
            handler.log_error(CacheError("Cache unavailable.", original_error=cause), category=ErrorCategory.INTERNAL)

        stats = handler.get_stats()
        self.assertEqual(stats["by_category"], {"cache": 1})
        self.assertEqual(stats["recent_errors"][0]["cause"], "ConnectionError: refused")
        self.assertIn("caused by ConnectionError", logs.output[0])

    def test_history_is_bounded(self):
        handler = ErrorHandler(max_error_history=3)
        with self.assertLogs("activitybot.error_handler", level="WARNING"):
            for i in range(5):
                handler.log_error(ValueError(str(i)), severity=ErrorSeverity.LOW)

        self.assertEqual(handler.error_count, 5)
        self.assertEqual([e["message"] for e in handler.get_stats()["recent_errors"]], ["2", "3", "4"])

        handler.reset()
        self.assertEqual(handler.get_stats(), {"total_errors": 0, "by_category": {}, "recent_errors": []})


class TestSafeOperation(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        error_handler.reset()

    async def test_failure_returns_fallback(self):
        @safe_operation(fallback_value=[], category=ErrorCategory.DATABASE)
        async def expire():
            raise DatabaseError("A database error occurred.", "locked")

        with self.assertLogs("activitybot.error_handler", level="ERROR"):
            self.assertEqual(await expire(), [])
        self.assertEqual(error_handler.get_stats()["by_category"], {"database": 1})

    async def test_success_passes_through(self):
        @safe_operation(fallback_value=0)
        async def seed():
            return 3

        self.assertEqual(await seed(), 3)
        self.assertEqual(error_handler.error_count, 0)

    def test_rejects_plain_functions(self):
        with self.assertRaises(TypeError):
            @safe_operation()
            def not_async():
                pass


if __name__ == "__main__":
    unittest.main()
