import argparse
import asyncio
import sys
from pathlib import Path

import cv2
import uvicorn

from faceattend.app import AttendanceApp, build_default_app
from faceattend.config import CAMERA_INDEX
from faceattend.exceptions import AttendanceError, ValidationError
from faceattend.logger import setup_logger
from faceattend.models import AttendanceMark, Session


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Face Recognition Attendance Tracker"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    enroll = subparsers.add_parser("enroll", help="Enroll a student from a webcam capture or a photo")
    enroll.add_argument("--id", required=True, dest="identity_id", help="Student ID")
    enroll.add_argument("--name", required=True, help="Student name")
    enroll.add_argument("--course", default="", help="Course the student belongs to")
    enroll.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Webcam index")
    enroll.add_argument("--image", type=Path, default=None, help="Photo file to use instead of the webcam")

    attend = subparsers.add_parser("attend", help="Run an attendance session with live recognition")
    attend.add_argument("--label", required=True, help="Course or label of the session")
    attend.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Webcam index")
    attend.add_argument(
        "--duration",
        type=float,
        default=0.0,
        help="Stop after N seconds (0 = run until Ctrl+C)",
    )

    list_cmd = subparsers.add_parser("list-identities", help="List enrolled students")
    list_cmd.add_argument("--limit", type=int, default=100, help="Max rows to print")

    remove = subparsers.add_parser("remove", help="Remove an enrolled student")
    remove.add_argument("--id", required=True, dest="identity_id", help="Student ID")

    history = subparsers.add_parser("history", help="Print the attendance report")
    history.add_argument("--from", dest="date_from", default="", help="First date (YYYY-MM-DD)")
    history.add_argument("--to", dest="date_to", default="", help="Last date (YYYY-MM-DD)")
    history.add_argument("--label", default="", help="Only sessions with this label")

    subparsers.add_parser("stats", help="Print dashboard totals")

    settings = subparsers.add_parser("settings", help="Update recognition settings")
    settings.add_argument("--threshold", type=float, default=None, help="Euclidean distance threshold")
    settings.add_argument("--interval", type=float, default=None, help="Seconds between recognition ticks")
    settings.add_argument("--advisor-key", default=None, help="API key of the photo quality advisor")
    gate = settings.add_mutually_exclusive_group()
    gate.add_argument("--fail-open", dest="fail_open", action="store_true", default=None,
                      help="Accept photos when the quality advisor is unreachable")
    gate.add_argument("--fail-closed", dest="fail_open", action="store_false",
                      help="Reject photos when the quality advisor is unreachable")

    clear = subparsers.add_parser("clear", help="Delete all students and attendance history")
    clear.add_argument("--yes", action="store_true", help="Confirm deletion")

    serve = subparsers.add_parser("serve", help="Launch the JSON API for the operator dashboard")
    serve.add_argument("--host", default="0.0.0.0", help="Host interface")
    serve.add_argument("--port", type=int, default=8000, help="Port")

    return parser


def _print_mark(session: Session, mark: AttendanceMark) -> None:
    print(f"[{mark.timestamp:%H:%M:%S}] {mark.display_name} ({mark.identity_id}) marked present")


async def _enroll(app: AttendanceApp, args: argparse.Namespace) -> None:
    await app.load()
    frame = None
    if args.image is not None:
        frame = cv2.imread(str(args.image))
        if frame is None:
            raise ValidationError(f"Could not read photo {args.image}.")
    identity = await app.enroll(
        identity_id=args.identity_id,
        display_name=args.name,
        frame=frame,
        course=args.course,
        target=args.camera,
    )
    print(f"Registration successful for {identity.identity_id} ({identity.display_name}).")


async def _attend(app: AttendanceApp, args: argparse.Namespace) -> None:
    await app.load()
    session = app.start_session(args.label)
    app.sessions.add_observer(_print_mark)
    print(f"Session {session.session_id} started for {session.label}. Press Ctrl+C to end it.")

    try:
        if not await app.start_attendance(args.camera):
            print(f"Recognition not started: {app.status}")
        elif args.duration > 0:
            await asyncio.sleep(args.duration)
        else:
            await asyncio.Event().wait()
    finally:
        closed = await app.end_session()
        if closed is None:
            print("Session ended with no attendance; nothing saved.")
        else:
            print(f"Session ended. {len(closed.marks)} student(s) marked present.")


async def _run_command(app: AttendanceApp, args: argparse.Namespace) -> int:
    if args.command == "enroll":
        await _enroll(app, args)
        return 0

    if args.command == "attend":
        await _attend(app, args)
        return 0

    await app.load(load_models=False)

    if args.command == "list-identities":
        if not app.state.identities:
            print("No students registered.")
            return 0
        print(f"{'Student ID':<16} {'Name':<32} {'Course'}")
        print("-" * 64)
        for rec in app.state.identities[: args.limit]:
            print(f"{rec.identity_id:<16} {rec.display_name:<32} {rec.course}")
        return 0

    if args.command == "remove":
        await app.remove_identity(args.identity_id)
        print(f"Student {args.identity_id} removed.")
        return 0

    if args.command == "history":
        rows = app.attendance_report(date_from=args.date_from, date_to=args.date_to, label=args.label)
        if not rows:
            print("No records found for the selected filters.")
            return 0
        print(f"{'Date':<12} {'Course':<16} {'Student Name':<28} {'Student ID':<14} {'Time'}")
        print("-" * 84)
        for row in rows:
            print(
                f"{row['date']:<12} {row['label']:<16} {row['display_name']:<28} "
                f"{row['identity_id']:<14} {row['timestamp'][11:19]}"
            )
        return 0

    if args.command == "stats":
        stats = app.dashboard_stats()
        print(f"Students registered : {stats['total_identities']}")
        print(f"Sessions recorded   : {stats['total_sessions']}")
        print(f"Attendance today    : {stats['attendance_today']}")
        print(f"Average attendance  : {stats['average_attendance_percent']}%")
        return 0

    if args.command == "settings":
        saved = await app.save_settings(
            threshold=args.threshold,
            poll_interval=args.interval,
            advisor_api_key=args.advisor_key,
            quality_gate_fail_open=args.fail_open,
        )
        print(
            f"Settings saved: threshold={saved.threshold:.3f}, interval={saved.poll_interval:.2f}s, "
            f"quality gate {'fail-open' if saved.quality_gate_fail_open else 'fail-closed'}."
        )
        return 0

    if args.command == "clear":
        if not args.yes:
            print("Refusing to clear data without --yes.")
            return 1
        await app.clear_all_data()
        print("All data has been cleared.")
        return 0

    return 1


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = setup_logger("main")

    try:
        if args.command == "serve":
            from faceattend.web_app import create_web_app

            uvicorn.run(create_web_app(), host=args.host, port=args.port, log_level="info")
            return 0

        return asyncio.run(_run_command(build_default_app(), args))

    except AttendanceError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
