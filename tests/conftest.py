"""Shared fixtures: sample trees, fake collaborators and a SQLite store."""

import json
import shutil
import threading
import time

import pytest

from repolens.broadcaster import ProgressBroadcaster
from repolens.enrichment import EnrichmentAdapter
from repolens.fetcher import RepositoryFetcher
from repolens.model import ModelError
from repolens.pipeline import AnalysisPipeline
from repolens.service import AnalysisService
from repolens.store import AnalysisStore, Database
from repolens.workspace import WorkspaceManager


@pytest.fixture
def scenario_tree(tmp_path):
    """Three files: one JavaScript, one Python, one Markdown."""
    root = tmp_path / "scenario"
    root.mkdir()
    (root / "a.js").write_text("console.log('a');\n")
    (root / "b.py").write_text("print('b')\nprint('b again')\n")
    (root / "README.md").write_text("# Scenario\n")
    return root


@pytest.fixture
def sample_repo(tmp_path):
    """A small Node + Python repository with manifests and VCS metadata."""
    root = tmp_path / "sample"
    root.mkdir()
    (root / "package.json").write_text(json.dumps({
        "name": "sample",
        "dependencies": {"express": "^4.18.2", "lodash": "~4.17.21"},
        "devDependencies": {"jest": "^29.0.0"},
    }))
    (root / "requirements.txt").write_text(
        "# runtime\nflask==2.3.2\nrequests[security]==2.31.0\nnumpy>=1.24\n\n"
    )
    (root / "Dockerfile").write_text("FROM node:20\nCOPY . .\n")
    (root / ".gitignore").write_text("node_modules/\n")
    (root / "README.md").write_text("# Sample\n\nA sample repository.\n")

    src = root / "src"
    src.mkdir()
    (src / "index.js").write_text("const express = require('express');\nconst app = express();\napp.listen(3000);\n")
    (src / "util.ts").write_text("export const x = 1;\n")
    (src / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00")

    api = src / "api"
    api.mkdir()
    (api / "app.py").write_text("from flask import Flask\napp = Flask(__name__)\n\n\n@app.get('/')\ndef root():\n    return 'ok'\n")

    git = root / ".git"
    git.mkdir()
    (git / "HEAD").write_text("ref: refs/heads/main\n")
    return root


class TreeFetcher(RepositoryFetcher):
    """Fetcher that copies a local tree instead of running git.

    Keeps the real branch-fallback logic; only the clone attempt is faked.
    """

    def __init__(self, source, missing_branches=(), unreachable=False):
        super().__init__(timeout=5)
        self.source = source
        self.missing_branches = set(missing_branches)
        self.unreachable = unreachable
        self.calls = []

    def _run_clone(self, url, dest, branch, depth):
        self.calls.append((url, branch, depth))
        if self.unreachable:
            return False, "fatal: repository 'https://example.com/x' not found"
        if branch in self.missing_branches:
            return False, f"fatal: Remote branch {branch} not found in upstream origin"
        shutil.copytree(self.source, dest, symlinks=True)
        return True, ""

    def is_reachable(self, url):
        return not self.unreachable


class FakeModel:
    """Answers every facet prompt; ``mode`` selects good, bad, slow or sleepy output."""

    def __init__(self, mode="ok"):
        self.mode = mode
        self.prompts = []
        self.timeouts = []
        self.release = threading.Event()

    def generate_json(self, prompt, system="", timeout=None):
        self.prompts.append(prompt)
        self.timeouts.append(timeout)
        if self.mode == "error":
            raise ModelError("Cannot reach Ollama at http://localhost:11434")
        if self.mode == "slow":
            self.release.wait(5)
            raise ModelError("released")
        if self.mode == "sleepy":
            time.sleep(0.3)
        if self.mode == "garbage":
            return {"unexpected": True}
        for facet in ("architecture", "quality"):
            if f'{{"{facet}"' in prompt:
                return {facet: f"Model {facet} assessment"}
        for facet in ("performance", "security", "devops"):
            if f'{{"{facet}"' in prompt:
                return {facet: [f"{facet} item 1", f"{facet} item 2"]}
        return {}


class FakeScheduler:
    """Records timers instead of arming them."""

    def __init__(self):
        self.timers = []

    def __call__(self, delay, callback):
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    def fire_all(self):
        for timer in list(self.timers):
            if not timer.cancelled:
                timer.callback()
        self.timers.clear()


class FakeTimer:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeClock:
    def __init__(self, step=0.5):
        self.now = 100.0
        self.step = step

    def __call__(self):
        self.now += self.step
        return self.now


@pytest.fixture
def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'repolens-test.db'}")
    database.init_db()
    yield database
    database.dispose()


@pytest.fixture
def store(db):
    return AnalysisStore(db)


@pytest.fixture
def workspace_root(tmp_path):
    root = tmp_path / "workspaces"
    root.mkdir()
    return root


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def broadcaster(scheduler):
    return ProgressBroadcaster(grace_period=5.0, scheduler=scheduler)


@pytest.fixture
def make_service(store, broadcaster, workspace_root):
    """Build an AnalysisService around a TreeFetcher for ``source``."""

    def _make(source, model=None, enrichment=None, missing_branches=(), unreachable=False,
              max_concurrent=2, debug=False):
        fetcher = TreeFetcher(source, missing_branches=missing_branches, unreachable=unreachable)
        pipeline = AnalysisPipeline(
            store=store,
            broadcaster=broadcaster,
            workspaces=WorkspaceManager(workspace_root),
            fetcher=fetcher,
            enrichment=enrichment or EnrichmentAdapter(model, timeout=2),
            clock=FakeClock(),
            debug=debug,
        )
        return AnalysisService(
            store=store,
            broadcaster=broadcaster,
            pipeline=pipeline,
            fetcher=fetcher,
            max_concurrent=max_concurrent,
        )

    return _make
