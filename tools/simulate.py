#!/usr/bin/env python3
"""
simulate.py - Run end-to-end attempt scenarios against the in-memory server.

Time is virtual, so a ten minute exam runs in well under a second.

Examples:
  python tools/simulate.py                      # every scenario
  python tools/simulate.py --scenario network_loss
  python tools/simulate.py --scenario resume_declined --quiet
"""

import argparse
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
from examsession.events import EventBus
from examsession.identity import GuestIdentity, StudentIdentity
from examsession.memory import InMemoryExamService, InMemoryResumeBroker
from examsession.models import SessionConfig
from examsession.scheduling import ManualScheduler
from examsession.session import AttemptSession
from examsession.session_log import SessionLogger
from examsession.storage import LocalStore

EXAM_ID = "demo"
QUESTIONS = [
    {"question_id": f"q{i}", "kind": "single", "weight": 2.0, "options": ["a", "b", "c"], "correct": "a"}
    for i in range(1, 6)
]


class World:
    """One simulated server, broker, clock and local disk."""

    def __init__(self, state_dir: Path, echo: bool, max_violations: int = 3):
        self.bus = None
        self.scheduler = ManualScheduler(start=1_700_000_000.0)
        self.broker = InMemoryResumeBroker()
        self.service = InMemoryExamService(clock=self.scheduler.clock, broker=self.broker)
        self.service.add_exam(EXAM_ID, "Demo exam", QUESTIONS, time_limit_seconds=600,
                              max_violations=max_violations)
        self.store = LocalStore(state_dir)
        self.logger = SessionLogger(echo=echo)
        self.identity = StudentIdentity(student_id="s-100", token="demo-token", name="Demo Student")

    def session(self, identity=None) -> AttemptSession:
        bus = EventBus(session_logger=self.logger)
        self.scheduler.bus = bus
        return AttemptSession(
            exam_id=EXAM_ID,
            identity=identity or self.identity,
            service=self.service,
            broker=self.broker,
            store=self.store,
            config=SessionConfig.default(),
            scheduler=self.scheduler,
            bus=bus,
            clock=self.scheduler.clock,
            session_logger=self.logger
        )


def scenario_network_loss(world: World) -> bool:
    session = world.session()
    session.start()
    for qid in ("q1", "q2", "q3"):
        session.set_response(qid, selected_option_id="a")
    world.service.reachable = False
    world.scheduler.advance(10)
    print(f"  after two failed probes: {session.state}, sealed answers: "
          f"{len(session.sealing.snapshot.responses)}")
    world.service.reachable = True
    world.scheduler.advance(10)
    print(f"  after reconnect: {session.state}, score {session.result.score}/{session.result.max_score}")
    return session.state == "submitted" and not world.store.has_attempt(EXAM_ID, session.attempt_id)


def scenario_violation_limit(world: World) -> bool:
    session = world.session()
    session.start()
    session.set_response("q1", selected_option_id="a")
    for _ in range(4):
        session.report_violation("tab_switch")
        world.scheduler.advance(0)
    world.scheduler.advance(1)
    print(f"  violations: {session.ledger.count}, submit calls: {len(world.service.submit_calls)}")
    return session.state == "submitted" and len(world.service.submit_calls) == 1


def scenario_timer_expired(world: World) -> bool:
    session = world.session(GuestIdentity(name="Ada Guest", email="ADA@example.org"))
    session.start()
    session.set_response("q2", selected_option_id="a")
    world.scheduler.suspend(400)
    world.scheduler.advance(300)
    print(f"  state: {session.state}, submit calls: {world.service.submit_calls}")
    return session.state == "submitted" and world.service.submit_calls[0][0] == "sealed"


def _interrupted_attempt(world: World) -> AttemptSession:
    first = world.session()
    first.start()
    first.set_response("q1", selected_option_id="a")
    world.service.reachable = False
    world.scheduler.advance(10)
    first.close()
    world.service.reachable = True
    world.scheduler.advance(60)

    second = world.session()
    second.start()
    print(f"  re-entry: {second.state}, request {second.resume.request.request_id}")
    return second


def scenario_resume_approved(world: World) -> bool:
    session = _interrupted_attempt(world)
    world.service.approve(session.resume.request.request_id, time_remaining_seconds=300)
    world.scheduler.advance(0)
    print(f"  approved: {session.state}, {session.time_remaining():.0f}s left, "
          f"q1 = {session.responses.responses['q1'].selected_option_id}")
    session.submit()
    world.scheduler.advance(1)
    return session.state == "submitted"


def scenario_resume_declined(world: World) -> bool:
    session = _interrupted_attempt(world)
    world.service.decline(session.resume.request.request_id, reason="Not permitted")
    world.scheduler.advance(1)
    print(f"  declined: {session.state}, outcome {session.resume_outcome}, "
          f"failure [{session.failure.category}] {session.failure.message}")
    return session.state == "submitted" and session.resume_outcome == "declined"


SCENARIOS = {
    "network_loss": scenario_network_loss,
    "violation_limit": scenario_violation_limit,
    "timer_expired": scenario_timer_expired,
    "resume_approved": scenario_resume_approved,
    "resume_declined": scenario_resume_declined,
}


def main():
    parser = argparse.ArgumentParser(description="Simulate exam attempts against the in-memory server.")
    parser.add_argument("--scenario", choices=sorted(SCENARIOS), help="Run only this scenario")
    parser.add_argument("--quiet", action="store_true", help="Do not echo the session event log")
    args = parser.parse_args()

    names = [args.scenario] if args.scenario else list(SCENARIOS)
    failures = 0
    for name in names:
        print(f"\n{'='*60}\n[SCENARIO] {name}\n{'='*60}")
        with tempfile.TemporaryDirectory() as state_dir:
            ok = SCENARIOS[name](World(Path(state_dir), echo=not args.quiet))
        print(f"[{'OK' if ok else 'FAIL'}] {name}")
        failures += 0 if ok else 1

    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
