"""
Shared fixtures: a deterministic world for driving attempt sessions.

The clock is virtual (ManualScheduler), the server and broker run
in-process, and local state lives under tmp_path. No threads, sockets or
sleeps are involved.
"""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from examsession.events import EventBus
from examsession.identity import StudentIdentity
from examsession.memory import InMemoryExamService, InMemoryResumeBroker
from examsession.models import SessionConfig
from examsession.scheduling import ManualScheduler
from examsession.session import AttemptSession
from examsession.session_log import SessionLogger
from examsession.storage import LocalStore

EXAM_ID = "e1"
START_TIME = 1_000_000.0


def make_questions(count=5):
    return [
        {"question_id": f"q{i}", "kind": "single", "weight": 2.0, "options": ["a", "b", "c"], "correct": "a"}
        for i in range(1, count + 1)
    ]


@pytest.fixture
def scheduler():
    return ManualScheduler(start=START_TIME)


@pytest.fixture
def broker():
    return InMemoryResumeBroker()


@pytest.fixture
def service(scheduler, broker):
    server = InMemoryExamService(clock=scheduler.clock, broker=broker)
    server.add_exam(EXAM_ID, "Algebra midterm", make_questions(), time_limit_seconds=600, max_violations=3)
    return server


@pytest.fixture
def store(tmp_path):
    return LocalStore(tmp_path / "state")


@pytest.fixture
def logger():
    return SessionLogger()


@pytest.fixture
def identity():
    return StudentIdentity(student_id="s1", token="t0k3n", name="Sam")


@pytest.fixture
def make_session(scheduler, service, broker, store, logger, identity):
    """Factory: each call builds a fresh session (a fresh page load) on the shared world."""
    sessions = []

    def factory(exam_id=EXAM_ID, identity_override=None, **config_overrides):
        bus = EventBus(session_logger=logger)
        scheduler.bus = bus
        notices = []
        session = AttemptSession(
            exam_id=exam_id,
            identity=identity_override or identity,
            service=service,
            broker=broker,
            store=store,
            config=SessionConfig.from_dict(config_overrides),
            scheduler=scheduler,
            bus=bus,
            clock=scheduler.clock,
            session_logger=logger,
            on_notice=lambda kind, data: notices.append((kind, data))
        )
        session.notices = notices
        sessions.append(session)
        return session

    yield factory

    for session in sessions:
        session.close()
