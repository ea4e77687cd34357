"""
Pytest configuration and fixtures for obsidian-research tests.
"""

import json
from pathlib import Path

import httpx
import pytest


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeVault:
    """In-memory stand-in for the Local REST API and the Smart Connections endpoint."""

    def __init__(self, files: dict[str, str]):
        self.files = dict(files)
        self.requests: list[httpx.Request] = []
        # Status codes returned, in order, before normal handling resumes
        self.failures: list[int] = []
        # None means the semantic endpoint is not installed (404)
        self.smart_results: list[dict] | None = None

    def count(self, method: str, path: str) -> int:
        return sum(1 for r in self.requests if r.method == method and r.url.path == path)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failures:
            return httpx.Response(self.failures.pop(0), json={"message": "injected failure"})

        path = request.url.path
        if path == "/":
            return httpx.Response(200, json={"status": "OK"})
        if path.startswith("/vault/"):
            return self._vault(request, path[len("/vault/"):])
        if path == "/search/simple/":
            return self._search_simple(request.url.params["query"])
        if path == "/search/smart":
            if self.smart_results is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json={"results": self.smart_results})
        return httpx.Response(404, json={"message": "Not Found"})

    def _vault(self, request: httpx.Request, rel: str) -> httpx.Response:
        if rel == "" or rel.endswith("/"):
            prefix = rel
            entries = set()
            for name in self.files:
                if name.startswith(prefix):
                    rest = name[len(prefix):]
                    head, sep, _ = rest.partition("/")
                    entries.add(head + sep)
            if prefix and not entries:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json={"files": sorted(entries)})

        if request.method == "GET":
            if rel not in self.files:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, text=self.files[rel])
        if request.method == "PUT":
            self.files[rel] = request.content.decode("utf-8")
            return httpx.Response(204)
        if request.method == "POST":
            self.files[rel] = self.files.get(rel, "") + request.content.decode("utf-8")
            return httpx.Response(204)
        if request.method == "DELETE":
            if rel not in self.files:
                return httpx.Response(404, json={"message": "Not Found"})
            del self.files[rel]
            return httpx.Response(204)
        return httpx.Response(405)

    def _search_simple(self, query: str) -> httpx.Response:
        results = []
        for name, content in sorted(self.files.items()):
            idx = content.lower().find(query.lower())
            if idx < 0:
                continue
            results.append({
                "filename": name,
                "score": content.lower().count(query.lower()),
                "matches": [{
                    "match": {"start": idx, "end": idx + len(query)},
                    "context": content[max(0, idx - 20):idx + len(query) + 20],
                }],
            })
        return httpx.Response(200, content=json.dumps(results), headers={"Content-Type": "application/json"})


VAULT_FILES = {
    "Concepts/Python.md": """---
title: Python
tags:
  - programming
  - language
---

# Python

Python is a programming language. See [[JavaScript]] for comparison.

## Features

- [x] Dynamic typing
- [ ] Pattern matching #todo

## History

Created by Guido van Rossum.
""",
    "Concepts/JavaScript.md": """# JavaScript

JavaScript is a web programming language.

It links to [[Python]] and [Docker docs](https://docs.docker.com).

```python
# Not a heading
print("hello")
```
""",
    "Sessions/2024-01-20 Setup.md": """# Setup Session

Configured Python and Docker. TODO: write tests.
TODO: add CI.
""",
    "README.md": "Plain note without headings.\n",
    "attachments/diagram.png": "binary",
}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    """Recorded backoff delays; sleeping advances the fake clock."""
    return []


@pytest.fixture
def sleep(clock, sleeps):
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        clock.advance(seconds)

    return fake_sleep


@pytest.fixture
def cache(clock):
    from obsidian_research.cache import CacheOptions, CacheStore
    return CacheStore(CacheOptions(default_ttl=300.0, max_size=100, max_memory_mb=5.0), clock=clock)


@pytest.fixture
def resilience(clock, sleep):
    from obsidian_research.resilience import CircuitBreakerConfig, ResilienceFacade, RetryPolicy
    return ResilienceFacade(
        RetryPolicy(max_attempts=3, base_delay=0.01, max_delay=1.0, backoff_factor=2.0),
        CircuitBreakerConfig(failure_threshold=3, recovery_timeout=30.0, monitoring_window=300.0),
        clock=clock,
        sleep=sleep,
    )


@pytest.fixture
def fake_vault():
    return FakeVault(VAULT_FILES)


@pytest.fixture
async def client(fake_vault):
    from obsidian_research.client import ObsidianClient
    obsidian = ObsidianClient(
        "https://obsidian.test",
        "test-key",
        transport=httpx.MockTransport(fake_vault.handler),
    )
    yield obsidian
    await obsidian.aclose()


@pytest.fixture
def vault(client, cache, resilience):
    from obsidian_research.vault import VaultService
    return VaultService(client, cache, resilience)


@pytest.fixture
def disk_vault(tmp_path: Path):
    """A vault directory on disk mirroring VAULT_FILES."""
    root = tmp_path / "vault"
    for name, content in VAULT_FILES.items():
        target = root / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    return root


@pytest.fixture
def context(client, clock, sleep):
    from obsidian_research.config import Settings
    from obsidian_research.context import build_context
    settings = Settings(
        api_url="https://obsidian.test",
        api_key="test-key",
        retry_base_delay=0.01,
        retry_max_delay=1.0,
        breaker_failure_threshold=3,
    )
    return build_context(settings, client=client, clock=clock, sleep=sleep)
