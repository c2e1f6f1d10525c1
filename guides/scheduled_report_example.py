"""A nightly report launched by cron, catching up once after downtime.

    sagaflow scheduler start --module guides/scheduled_report_example.py --lifespan 120
"""

import asyncio

from sagaflow import CatchUpPolicy, WorkflowDefinition, WorkflowEngine


async def collect(ctx):
    return {"rows": 1280}


def publish(ctx):
    print(f"📈 Published report with {ctx['rows']} rows")


nightly_report = (
    WorkflowDefinition(
        name="nightly_report",
        schedule="0 2 * * *",
        catch_up=CatchUpPolicy.RUN_ONCE,
    )
    .with_step("collect", collect)
    .with_step("publish", publish, after="collect")
)


async def main():
    engine = WorkflowEngine()
    engine.register(nightly_report)
    # start() reconciles missed ticks, then fires new ones every tick_interval
    await engine.start(lifespan=5)
    await engine.dispatcher.join()
    await engine.stop()
    for execution in await engine.list_executions():
        print(f"{execution.id} {execution.status.value} {execution.trigger.kind.value}")


if __name__ == "__main__":
    asyncio.run(main())
