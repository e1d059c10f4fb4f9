#!/usr/bin/env python3
"""
Interactive exam session client.

Drives one AttemptSession against an HTTP exam server. Background work
(timer ticks, probes, retries, resume polling) runs on scheduler threads
and is applied through the session's event bus while the command loop
waits for input.
"""

import argparse
import getpass
import os
import sys
from pathlib import Path
from typing import Optional

from .broker import PollingResumeBroker
from .client import HttpExamService
from .config_loader import load_config
from .errors import ExamSessionError, SessionStateError, StartRejectedError, TransientError
from .events import EventBus
from .identity import GuestIdentity, StudentIdentity
from .models import SessionState
from .scheduling import ThreadScheduler
from .session import AttemptSession
from .session_log import SessionLogger
from .storage import LocalStore

HELP_TEXT = """Commands:
  answer <q> <option>        Select one option of a single-choice question
  choose <q> <opt> [opt...]  Select options of a multiple-choice question
  text <q> <answer...>       Write a free-text answer
  flag <q>                   Flag/unflag a question for review
  page <n>                   Go to page n
  status                     Show attempt status
  time                       Show remaining time
  violation <type>           Report a proctoring event (tab_switch, window_blur, ...)
  ack                        Return to the exam after a violation warning
  submit                     Submit the attempt
  retry                      Retry a failed submission
  help                       Show this help
  exit                       Save progress and leave"""

WAITING_STATES = {SessionState.SUBMITTING, SessionState.AWAITING_APPROVAL, SessionState.SEALED}


class SessionRunner:
    """Command-line front end of an attempt session."""

    def __init__(self):
        self.session: Optional[AttemptSession] = None
        self.logger: Optional[SessionLogger] = None
        self.bus: Optional[EventBus] = None
        self.scheduler: Optional[ThreadScheduler] = None
        self.service: Optional[HttpExamService] = None

    def build_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            description="Exam Session Client",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Examples:
  exam-session --server https://exams.example.org/api --exam 42 --student-id s123
  exam-session --server https://exams.example.org/api --exam 42 --guest-name "Ada L" --guest-email ada@example.org
            """
        )
        parser.add_argument("--server", required=True, help="Base URL of the exam API")
        parser.add_argument("--exam", required=True, help="Exam id")
        parser.add_argument("--config", help="Path to session configuration file (default: session_config.json)")

        student = parser.add_argument_group("student")
        student.add_argument("--student-id", help="Student id (token read from EXAM_SESSION_TOKEN or prompted)")

        guest = parser.add_argument_group("guest")
        guest.add_argument("--guest-name", help="Guest full name")
        guest.add_argument("--guest-email", help="Guest email")
        guest.add_argument("--guest-phone", help="Guest phone (optional)")

        parser.add_argument("--storage", help="Directory for local state (default: from config)")
        parser.add_argument("--storage-password", action="store_true",
                            help="Encrypt local state with a password (prompted)")
        parser.add_argument("--exam-password", action="store_true",
                            help="Prompt for the exam password")
        return parser

    def _identity(self, args):
        if args.student_id:
            token = os.environ.get("EXAM_SESSION_TOKEN") or getpass.getpass("Access token: ").strip()
            return StudentIdentity(student_id=args.student_id, token=token)
        if args.guest_name and args.guest_email:
            return GuestIdentity(name=args.guest_name, email=args.guest_email, phone=args.guest_phone)
        raise ValueError("Provide --student-id, or --guest-name and --guest-email")

    def run(self, argv=None) -> int:
        """Main application entry point."""
        args = self.build_parser().parse_args(argv)

        try:
            config = load_config(Path(args.config) if args.config else None)
            identity = self._identity(args)
        except ValueError as e:
            print(f"[ERROR] {e}")
            return 1

        storage_dir = Path(args.storage or config.storage_dir)
        try:
            if args.storage_password:
                store = LocalStore.with_password(storage_dir, getpass.getpass("Local storage password: "))
            else:
                store = LocalStore(storage_dir)
        except (KeyboardInterrupt, EOFError):
            print("\nExiting.")
            return 1

        exam_password = None
        if args.exam_password:
            try:
                exam_password = getpass.getpass("Exam password: ").strip()
            except (KeyboardInterrupt, EOFError):
                print("\nExiting.")
                return 1

        self.logger = SessionLogger(Path(config.log_file))
        self.scheduler = ThreadScheduler(session_logger=self.logger)
        self.bus = EventBus(session_logger=self.logger)
        self.service = HttpExamService(
            args.server,
            identity=identity,
            probe_timeout_seconds=config.probe_timeout_seconds,
            session_logger=self.logger
        )
        broker = PollingResumeBroker(
            self.service, self.scheduler,
            interval_seconds=config.resume_poll_interval_seconds,
            session_logger=self.logger
        )
        self.session = AttemptSession(
            exam_id=args.exam,
            identity=identity,
            service=self.service,
            broker=broker,
            store=store,
            config=config,
            scheduler=self.scheduler,
            bus=self.bus,
            session_logger=self.logger,
            on_state_change=self._on_state_change,
            on_notice=self._on_notice
        )

        print("=" * 60)
        print(f"Exam {args.exam} - {identity.display_name()}")
        print("=" * 60)

        self.bus.start()
        try:
            state = self.session.start(password=exam_password)
        except StartRejectedError as e:
            print(f"[ERROR] Exam could not be started: {e}")
            self.bus.stop()
            return 1
        except TransientError as e:
            print(f"[ERROR] Exam server unreachable: {e}")
            self.bus.stop()
            return 1

        if state == SessionState.ACTIVE and self.session.exam:
            print(f"\n{self.session.exam.title}")
            print(f"Questions: {len(self.session.questions)}, time remaining: {self.session.timer.format_remaining()}")
        elif state == SessionState.SEALED:
            print("\n[i] Recovered sealed answers. They will be sent once the exam server is reachable.")

        try:
            self.command_loop()
        finally:
            self.session.close()
            self.bus.stop()
            self.service.close()
        return 0 if self.session.state == SessionState.SUBMITTED else 2

    def command_loop(self):
        """Main interactive command loop."""
        print("\n" + "=" * 60)
        print(HELP_TEXT)
        print("=" * 60 + "\n")

        while self.session.state != SessionState.SUBMITTED:
            try:
                cmd_line = input("exam> ").strip()
                if not cmd_line:
                    continue

                parts = cmd_line.split()
                command = parts[0].lower()
                self.logger("COMMAND_RUN", f"Command: {command}")

                if command in ['exit', 'quit']:
                    self.cmd_exit()
                    return
                elif command == 'help':
                    print(HELP_TEXT)
                elif command == 'answer':
                    if len(parts) != 3:
                        print("Usage: answer <q> <option>")
                    else:
                        self.session.set_response(parts[1], selected_option_id=parts[2])
                        print(f"Saved {parts[1]}.")
                elif command == 'choose':
                    if len(parts) < 3:
                        print("Usage: choose <q> <opt> [opt...]")
                    else:
                        self.session.set_response(parts[1], selected_option_ids=parts[2:])
                        print(f"Saved {parts[1]}.")
                elif command == 'text':
                    if len(parts) < 3:
                        print("Usage: text <q> <answer...>")
                    else:
                        answer = cmd_line.split(None, 2)[2]
                        self.session.set_response(parts[1], text_response=answer)
                        print(f"Saved {parts[1]}.")
                elif command == 'flag':
                    if len(parts) != 2:
                        print("Usage: flag <q>")
                    else:
                        flagged = self.session.toggle_flag(parts[1])
                        print(f"{parts[1]} {'flagged' if flagged else 'unflagged'}.")
                elif command == 'page':
                    if len(parts) != 2 or not parts[1].isdigit():
                        print("Usage: page <n>")
                    else:
                        self.session.go_to_page(int(parts[1]))
                elif command == 'status':
                    self.cmd_status()
                elif command == 'time':
                    self.cmd_time()
                elif command == 'violation':
                    if len(parts) != 2:
                        print("Usage: violation <type>")
                    else:
                        self.session.report_violation(parts[1].lower())
                elif command == 'ack':
                    if not self.session.acknowledge_warning():
                        print("No pending warning.")
                elif command == 'submit':
                    self.cmd_submit()
                elif command == 'retry':
                    if not self.session.retry_submission():
                        print("Nothing to retry.")
                else:
                    print(f"Unknown command: '{command}'. Type 'help' for a list of commands.")

            except SessionStateError as e:
                print(f"Not now: {e}")
            except ValueError as e:
                print(f"[ERROR] {e}")
            except (KeyboardInterrupt, EOFError):
                print("\nUse 'exit' to save progress or 'submit' to finish the exam.")
            except ExamSessionError as e:
                print(f"[ERROR] {e}")
                self.logger("ERROR", str(e))

        self._print_result()

    def cmd_time(self):
        print(f"\nTime remaining: {self.session.timer.format_remaining() if self.session.timer else '--:--:--'}\n")

    def cmd_status(self):
        status = self.session.status()
        print()
        print(f"State: {status['state']}")
        print(f"Answered: {status['answered']}/{status['questions']}")
        if status['flagged']:
            print(f"Flagged: {', '.join(status['flagged'])}")
        print(f"Page: {status['current_page']}")
        print(f"Violations: {status['violations']}/{status['max_violations']}")
        print(f"Server reachable: {'yes' if status['healthy'] else 'no'}")
        if status['failure']:
            failure = status['failure']
            hint = "retry with 'retry'" if failure.retryable else "contact your instructor"
            print(f"Failure [{failure.category}]: {failure.message} ({hint})")
        print()

    def cmd_submit(self):
        status = self.session.status()
        try:
            confirm = input(f"Submit now with {status['answered']}/{status['questions']} answered? (y/n): ").strip().lower()
        except (KeyboardInterrupt, EOFError):
            print("\nSubmission cancelled.")
            return
        if confirm != 'y':
            print("Continuing the exam.")
            return
        if self.session.submit():
            print("Submitting...")
        else:
            print("A submission is already under way.")

    def cmd_exit(self):
        """Leave without submitting; local state and the seal beacon keep the attempt recoverable."""
        self.session.unload()
        print("\nProgress saved. Start the client again to resume this attempt.")
        self.logger("SESSION_EXIT", "User exited session - progress saved")

    def _print_result(self):
        result = self.session.result
        print("\n" + "=" * 60)
        if result is None:
            print("Attempt submitted.")
        elif result.score is not None:
            print(f"Attempt submitted. Score: {result.score}/{result.max_score}")
        else:
            print("Attempt submitted. Score pending review.")
        print("=" * 60)

    def _on_state_change(self, old_state: str, new_state: str):
        if new_state in WAITING_STATES:
            print(f"\n[{new_state.upper()}]")

    def _on_notice(self, kind: str, data: dict):
        if kind == "low_time":
            print(f"\n[!] {data['remaining'] / 60:.0f} minutes remaining.")
        elif kind == "violation_warning":
            print(f"\n[!] Proctoring violation ({data['type']}). "
                  f"{data['remaining_before_threshold']} left before your attempt is submitted. "
                  f"Type 'ack' within {data['countdown_seconds']:.0f} seconds.")
        elif kind == "violation_limit":
            print("\n[!] Violation limit reached. Your attempt is being submitted.")
        elif kind == "awaiting_approval":
            print(f"\n[i] This attempt was interrupted. Waiting for instructor approval "
                  f"(request {data['request_id']}).")
        elif kind == "resume_approved":
            print(f"\n[OK] Resume approved. {data['time_remaining'] / 60:.1f} minutes remaining.")
        elif kind == "resume_refused":
            print(f"\n[!] Resume {data['outcome']}: {data['message']}")
        elif kind == "failure":
            hint = "type 'retry'" if data['retryable'] else "contact your instructor"
            print(f"\n[ERROR] [{data['category']}] {data['message']} - {hint}")


def main():
    """Entry point for the exam session client."""
    runner = SessionRunner()
    sys.exit(runner.run())


if __name__ == "__main__":
    main()
