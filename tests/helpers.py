"""
Mock database and timing helpers shared by the unit tests
"""

from unittest.mock import AsyncMock, MagicMock


class FakeNestedTransaction:
    """Stand-in for session.begin_nested() that never swallows exceptions"""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


def make_result(scalar=None, one=None, first=None, rows=None):
    """MagicMock shaped like a SQLAlchemy Result"""
    result = MagicMock()
    result.scalar.return_value = scalar
    result.one.return_value = one
    result.first.return_value = first
    result.__iter__.return_value = iter(rows or [])
    return result


def make_mock_session(execute_side_effect=None):
    session = MagicMock()
    session.execute = AsyncMock(side_effect=execute_side_effect, return_value=make_result(scalar=True))
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.get = AsyncMock(return_value=None)
    session.begin_nested = MagicMock(side_effect=lambda: FakeNestedTransaction())
    session.add = MagicMock()
    return session


class FakeSessionFactory:
    """Callable returning `async with`-able sessions, all sharing one mock"""

    def __init__(self, session=None):
        self.session = session or make_mock_session()
        self.opened = 0

    def __call__(self):
        factory = self

        class _Context:
            async def __aenter__(self):
                factory.opened += 1
                return factory.session

            async def __aexit__(self, exc_type, exc, tb):
                return False

        return _Context()


class SleepRecorder:
    """Async sleep replacement that records the requested delays"""

    def __init__(self):
        self.calls = []

    async def __call__(self, delay):
        self.calls.append(delay)
