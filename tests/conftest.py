"""
Shared pytest fixtures for Shipyard tests.

This module provides common fixtures including:
- ToolMocker: Mock subprocess launches with canned, pattern-matched responses
- Redis mocks for store/queue/scheduler tests
"""

import asyncio
import fnmatch
import os
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Union
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fixtures.rollout_scenarios import SCENARIOS, ToolResponse


# =============================================================================
# Subprocess Mocking Infrastructure
# =============================================================================

@dataclass
class ToolCall:
    """Record of a tool launch made during testing."""
    command: List[str]
    full_command_str: str
    matched_pattern: Optional[str] = None
    response: Optional[ToolResponse] = None
    input: Optional[bytes] = None
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    new_session: bool = False
    killed: bool = False


class FakeProcess:
    """Stands in for asyncio.subprocess.Process."""

    def __init__(self, response: ToolResponse, call: ToolCall, pid: int):
        self._response = response
        self._call = call
        self.pid = pid
        self.returncode: Optional[int] = None

    async def communicate(self, input: Optional[bytes] = None):
        self._call.input = input
        if self._response.delay:
            await asyncio.sleep(self._response.delay)
        self.returncode = self._response.returncode
        return self._response.stdout.encode(), self._response.stderr.encode()

    def kill(self) -> None:
        self._call.killed = True
        self.returncode = -9

    async def wait(self) -> int:
        return self.returncode


class ToolMocker:
    """
    Mock subprocess launches with pattern-matched responses.

    Lets tests drive the tool runner, kubectl client and pipeline runner
    without real binaries by intercepting asyncio.create_subprocess_exec.

    Usage:
        def test_build(tool_mocker):
            tool_mocker.register("mvn", ToolResponse(stdout="BUILD SUCCESS"))

            # Run code that launches tools

            assert tool_mocker.was_called_with("mvn")
    """

    def __init__(self):
        self._responses: List[tuple] = []
        self._call_history: List[ToolCall] = []
        self._processes: Dict[int, FakeProcess] = {}
        self._default_response = ToolResponse(
            stderr="Error: mock not configured for this command",
            returncode=1
        )

    def register(
        self,
        pattern: Union[str, Pattern],
        response: ToolResponse,
        priority: int = 0
    ) -> "ToolMocker":
        """
        Register a response for commands matching the pattern.

        Args:
            pattern: String (substring match) or regex pattern
            response: ToolResponse to return when matched
            priority: Higher priority patterns are checked first

        Returns:
            self for chaining
        """
        self._responses.append((pattern, response, priority))
        self._responses.sort(key=lambda x: x[2], reverse=True)
        return self

    def register_scenario(self, scenario_name: str) -> "ToolMocker":
        """Register all responses for a named rollout scenario."""
        if scenario_name not in SCENARIOS:
            raise ValueError(
                f"Unknown scenario: {scenario_name}. "
                f"Available: {list(SCENARIOS.keys())}"
            )

        for pattern, response in SCENARIOS[scenario_name].items():
            self.register(pattern, response)

        return self

    def set_default_response(self, response: ToolResponse) -> "ToolMocker":
        """Set the default response for unmatched commands."""
        self._default_response = response
        return self

    async def mock_exec(self, *cmd, stdin=None, stdout=None, stderr=None, cwd=None, env=None, **kwargs):
        """Side effect for patching asyncio.create_subprocess_exec."""
        cmd = list(cmd)
        cmd_str = " ".join(cmd)

        matched_pattern = None
        response = self._default_response
        for pattern, resp, _ in self._responses:
            if isinstance(pattern, str):
                if pattern in cmd_str:
                    matched_pattern = pattern
                    response = resp
                    break
            elif pattern.search(cmd_str):
                matched_pattern = pattern.pattern
                response = resp
                break

        call = ToolCall(
            command=cmd,
            full_command_str=cmd_str,
            matched_pattern=matched_pattern,
            response=response,
            env=dict(env or {}),
            cwd=cwd,
            new_session=kwargs.get("start_new_session", False),
        )
        self._call_history.append(call)

        if response.missing:
            raise FileNotFoundError(2, "No such file or directory", cmd[0])

        process = FakeProcess(response, call, pid=90000 + len(self._processes))
        self._processes[process.pid] = process
        return process

    def kill_group(self, pid: int, sig: int) -> None:
        """Side effect for patching os.killpg; only fake processes are reachable."""
        process = self._processes.get(pid)
        if process is None:
            raise ProcessLookupError(pid)
        process.kill()

    @property
    def calls(self) -> List[ToolCall]:
        """Get all launches made during the test."""
        return self._call_history

    @property
    def call_count(self) -> int:
        return len(self._call_history)

    def was_called_with(self, pattern: str) -> bool:
        """Check if any call contained the given pattern."""
        return any(pattern in call.full_command_str for call in self._call_history)

    def get_calls_matching(self, pattern: str) -> List[ToolCall]:
        """Get all calls containing the given pattern."""
        return [c for c in self._call_history if pattern in c.full_command_str]

    def index_of(self, pattern: str) -> int:
        """Position of the first call containing the pattern (-1 if none)."""
        for i, call in enumerate(self._call_history):
            if pattern in call.full_command_str:
                return i
        return -1

    def reset(self):
        """Clear call history (but keep registered responses)."""
        self._call_history = []


@pytest.fixture
def tool_mocker():
    """
    Fixture that provides a ToolMocker with subprocess launches patched.

    Unmatched commands fail with exit code 1.
    """
    mocker = ToolMocker()
    with patch("asyncio.create_subprocess_exec", side_effect=mocker.mock_exec), \
            patch("os.killpg", side_effect=mocker.kill_group):
        yield mocker


@pytest.fixture
def tool_mocker_ok():
    """Like tool_mocker, but unmatched commands succeed."""
    mocker = ToolMocker()
    mocker.set_default_response(ToolResponse(stdout="ok\n"))
    with patch("asyncio.create_subprocess_exec", side_effect=mocker.mock_exec), \
            patch("os.killpg", side_effect=mocker.kill_group):
        yield mocker


# =============================================================================
# Redis Mocking Infrastructure
# =============================================================================

@pytest.fixture
def mock_redis():
    """Create a mock Redis client for async operations."""
    redis = AsyncMock()

    redis.setex = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock()
    redis.delete = AsyncMock(return_value=1)
    redis.expire = AsyncMock()
    redis.ttl = AsyncMock(return_value=-2)
    redis.incr = AsyncMock(return_value=1)
    redis.incrby = AsyncMock()

    redis.sadd = AsyncMock()
    redis.srem = AsyncMock()
    redis.smembers = AsyncMock(return_value=set())
    redis.scard = AsyncMock(return_value=0)

    redis.lpush = AsyncMock(return_value=1)
    redis.rpush = AsyncMock()
    redis.rpop = AsyncMock(return_value=None)
    redis.lrange = AsyncMock(return_value=[])
    redis.ltrim = AsyncMock()
    redis.llen = AsyncMock(return_value=0)
    redis.lrem = AsyncMock(return_value=0)

    redis.hset = AsyncMock(return_value=1)
    redis.hgetall = AsyncMock(return_value={})

    redis.publish = AsyncMock()
    redis.ping = AsyncMock(return_value=True)

    return redis


class InMemoryRedis:
    """
    Redis stand-in with in-memory data storage for more realistic tests.

    Implements only the commands Shipyard uses, with decode_responses=True
    semantics (strings in, strings out).
    """

    def __init__(self):
        self._storage: Dict[str, Any] = {}
        self._ttls: Dict[str, int] = {}
        self.published: List[tuple] = []

    # Strings

    async def set(self, key, value, *args, **kwargs):
        self._storage[key] = str(value)
        return True

    async def setex(self, key, ttl, value):
        self._storage[key] = str(value)
        self._ttls[key] = int(ttl)
        return True

    async def get(self, key):
        value = self._storage.get(key)
        return value if isinstance(value, str) else None

    async def incr(self, key):
        return await self.incrby(key, 1)

    async def incrby(self, key, amount):
        value = int(self._storage.get(key, 0)) + amount
        self._storage[key] = str(value)
        return value

    # Keys

    async def delete(self, *keys):
        count = 0
        for key in keys:
            if key in self._storage:
                del self._storage[key]
                self._ttls.pop(key, None)
                count += 1
        return count

    async def exists(self, *keys):
        return sum(1 for k in keys if k in self._storage)

    async def expire(self, key, ttl):
        if key in self._storage:
            self._ttls[key] = int(ttl)
            return True
        return False

    async def ttl(self, key):
        if key not in self._storage:
            return -2
        return self._ttls.get(key, -1)

    async def keys(self, pattern):
        return [k for k in self._storage if fnmatch.fnmatch(k, pattern)]

    # Sets

    def _set(self, key) -> set:
        return self._storage.setdefault(key, set())

    async def sadd(self, key, *members):
        target = self._set(key)
        before = len(target)
        target.update(members)
        return len(target) - before

    async def srem(self, key, *members):
        target = self._storage.get(key)
        if not isinstance(target, set):
            return 0
        removed = len(target & set(members))
        target.difference_update(members)
        if not target:
            del self._storage[key]
        return removed

    async def smembers(self, key):
        target = self._storage.get(key)
        return set(target) if isinstance(target, set) else set()

    async def scard(self, key):
        target = self._storage.get(key)
        return len(target) if isinstance(target, set) else 0

    # Lists (index 0 is the head)

    def _list(self, key) -> list:
        return self._storage.setdefault(key, [])

    async def lpush(self, key, *values):
        target = self._list(key)
        for value in values:
            target.insert(0, str(value))
        return len(target)

    async def rpush(self, key, *values):
        target = self._list(key)
        target.extend(str(v) for v in values)
        return len(target)

    async def rpop(self, key):
        target = self._storage.get(key)
        if not isinstance(target, list) or not target:
            return None
        value = target.pop()
        if not target:
            del self._storage[key]
        return value

    async def lrange(self, key, start, end):
        target = self._storage.get(key)
        if not isinstance(target, list):
            return []
        end = len(target) if end == -1 else end + 1
        return target[start:end]

    async def ltrim(self, key, start, end):
        target = self._storage.get(key)
        if isinstance(target, list):
            end = len(target) if end == -1 else end + 1
            self._storage[key] = target[start:end]
        return True

    async def llen(self, key):
        target = self._storage.get(key)
        return len(target) if isinstance(target, list) else 0

    async def lrem(self, key, count, value):
        target = self._storage.get(key)
        if not isinstance(target, list):
            return 0
        kept = [v for v in target if v != value]
        removed = len(target) - len(kept)
        if kept:
            self._storage[key] = kept
        else:
            del self._storage[key]
        return removed

    # Hashes

    async def hset(self, name, key=None, value=None, mapping=None):
        target = self._storage.setdefault(name, {})
        items = dict(mapping or {})
        if key is not None:
            items[key] = value
        added = len(set(items) - set(target))
        target.update({k: str(v) for k, v in items.items()})
        return added

    async def hgetall(self, name):
        target = self._storage.get(name)
        return dict(target) if isinstance(target, dict) else {}

    # Pub/sub and connection

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 0

    async def ping(self):
        return True

    async def close(self):
        return None


@pytest.fixture
def redis_store():
    """In-memory Redis that reads back what it writes."""
    return InMemoryRedis()


# =============================================================================
# Test Markers Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "tool_mock: Tests using mocked subprocess launches"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests requiring infrastructure"
    )
