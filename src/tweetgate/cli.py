import argparse
import asyncio
import json
from typing import Any, Dict

from .autonomy.config import load_config
from .autonomy.logging_utils import setup_logging
from .autonomy.runner import AgentService, run_loop
from .twitter_client import TwitterAuthError, TwitterClient


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def _service() -> AgentService:
    cfg = load_config()
    setup_logging(cfg)
    return AgentService(cfg)


def cmd_me(_: argparse.Namespace) -> None:
    """Show the Twitter account the credentials belong to."""
    client = TwitterClient()
    print_json(client.get_me())


def cmd_enqueue(args: argparse.Namespace) -> None:
    """Queue a candidate action for human review.

    Examples:

        tweetgate enqueue --kind post --content "Shipping the approval queue today"

        tweetgate enqueue --kind like --target 1790000000000000000
    """
    context: Dict[str, Any] = {}
    if args.context:
        try:
            context = json.loads(args.context)
        except json.JSONDecodeError as e:
            raise SystemExit(f"--context must be a JSON object: {e}")
        if not isinstance(context, dict):
            raise SystemExit("--context must be a JSON object")

    async def _run() -> Any:
        service = _service()
        return await service.manager.enqueue(args.kind, args.content or "", args.target, context)

    request = asyncio.run(_run())
    if request is None:
        print_json({"queued": False, "reason": "duplicate"})
        return
    print_json({"queued": True, "approval_id": request.id, "status": request.status.value})


def cmd_decide(args: argparse.Namespace) -> None:
    """Record a reviewer decision and execute it when approved."""

    async def _run() -> Any:
        service = _service()
        if args.approve:
            await service.init_session()
        return await service.manager.handle_decision(
            args.id,
            args.approve,
            modified_content=args.modified_content,
            reason=args.reason,
            reviewer=args.reviewer or "cli",
        )

    outcome = asyncio.run(_run())
    print_json(
        {
            "approval_id": outcome.approval_id,
            "status": outcome.status.value if outcome.status else None,
            "changed": outcome.changed,
            "result_ref": outcome.result_ref,
            "message": outcome.message,
        }
    )


def cmd_poll(_: argparse.Namespace) -> None:
    """Reconcile every decision reviewers have written to the store."""

    async def _run() -> Any:
        service = _service()
        await service.init_session()
        service.manager.restore()
        return await service.manager.poll_for_decisions()

    resolved = asyncio.run(_run())
    print_json([{"approval_id": r.id, "status": r.status.value, "result_ref": r.result_ref} for r in resolved])


def cmd_run(args: argparse.Namespace) -> None:
    """Run the agent: timers, decision poller and webhook until interrupted."""
    if not args.once:
        run_loop()
        return

    async def _run() -> Any:
        return await _service().run_once()

    print_json(asyncio.run(_run()))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Twitter agent whose every action waits for human approval.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # me
    p_me = subparsers.add_parser("me", help="Show the authenticated Twitter account")
    p_me.set_defaults(func=cmd_me)

    # enqueue
    p_enqueue = subparsers.add_parser("enqueue", help="Queue an action for approval")
    p_enqueue.add_argument("--kind", required=True, help="post, reply, mention, dm, like or retweet")
    p_enqueue.add_argument("--content", help="Text to publish")
    p_enqueue.add_argument("--target", help="Tweet id (or user id for dm) the action applies to")
    p_enqueue.add_argument("--context", help="JSON object stored alongside the request")
    p_enqueue.set_defaults(func=cmd_enqueue)

    # decide
    p_decide = subparsers.add_parser("decide", help="Approve or reject a queued action")
    p_decide.add_argument("--id", required=True, help="Approval id")
    verdict = p_decide.add_mutually_exclusive_group(required=True)
    verdict.add_argument("--approve", dest="approve", action="store_true")
    verdict.add_argument("--reject", dest="approve", action="store_false")
    p_decide.add_argument("--modified-content", help="Replacement text to publish instead of the draft")
    p_decide.add_argument("--reason", help="Reviewer note")
    p_decide.add_argument("--reviewer", help="Reviewer name recorded on the row")
    p_decide.set_defaults(func=cmd_decide)

    # poll
    p_poll = subparsers.add_parser("poll", help="Reconcile decisions written to the store")
    p_poll.set_defaults(func=cmd_poll)

    # run
    p_run = subparsers.add_parser("run", help="Run the agent")
    p_run.add_argument("--once", action="store_true", help="Do a single pass and exit")
    p_run.set_defaults(func=cmd_run)

    return parser


def main() -> None:
    try:
        parser = build_parser()
        args = parser.parse_args()
        args.func(args)
    except TwitterAuthError as e:
        raise SystemExit(str(e))
    except Exception as e:
        # Catch-all to avoid noisy tracebacks for common runtime issues
        raise SystemExit(f"Error: {e}")


if __name__ == "__main__":
    main()
