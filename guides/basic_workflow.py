"""Run a small durable workflow end to end in one process."""

import asyncio
import random

from repflow import Orchestrator, Step, TransientError, workflow
from repflow.contracts import TERMINAL_STATUSES
from repflow.events import EventRegistry, Payload


class CheckIn(Payload):
    member_id: str


def load_member(ctx):
    return {"member_id": ctx.data["member_id"], "name": "Alex"}


def call_flaky_coach(ctx):
    # Fails now and then; completed steps are not repeated on retry
    if random.random() < 0.5:
        raise TransientError("coach service busy")
    return f"Great work today, {ctx['load-member']['name']}!"


async def main():
    events = EventRegistry()
    events.register("member/check-in", CheckIn)

    check_in = workflow(
        "member-check-in",
        event="member/check-in",
        retries=5,
        steps=[
            Step.run("load-member", load_member),
            Step.run("coach-message", call_flaky_coach),
        ],
        finish=lambda ctx: {"message": ctx["coach-message"]},
    )

    orchestrator = Orchestrator([check_in], events=events)
    [run] = await orchestrator.send("member/check-in", {"member_id": "m-1"})
    print(f"Started run {run.run_id}")

    # Retries are timers; keep ticking until the run settles
    while True:
        for outcome in await orchestrator.run_until_idle():
            print(f"{outcome.workflow_id}: {outcome.status.value} {outcome.output or ''}")
        record = await orchestrator.repository.get_run(run.run_id)
        if record.status in TERMINAL_STATUSES:
            break
        await asyncio.sleep(1)
        await orchestrator.tick()

    await orchestrator.close()


if __name__ == "__main__":
    asyncio.run(main())
