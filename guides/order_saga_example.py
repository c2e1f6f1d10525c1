"""Order saga with a retrying payment step and a human approval before shipping.

Run it directly, or point the CLI at it:

    sagaflow run order@1 --module guides/order_saga_example.py --context '{"order_id": 42}'
    sagaflow execution approve <execution-id> ship --module guides/order_saga_example.py
"""

import asyncio
import random

from sagaflow import RetryPolicy, StepFailed, WorkflowDefinition, WorkflowEngine


def reserve_inventory(ctx):
    print(f"📦 Reserving stock for order {ctx['order_id']}")
    return {"reservation_id": f"res-{ctx['order_id']}"}


def release_inventory(ctx):
    print(f"↩️  Releasing reservation {ctx['reservation_id']}")


async def charge_payment(ctx):
    if random.random() < 0.3:
        raise ConnectionError("payment gateway timed out")
    if ctx.get("card") == "declined":
        raise StepFailed("card declined", error_type="card_declined", retryable=False)
    print(f"💳 Charged order {ctx['order_id']}")
    return {"payment_id": f"pay-{ctx['order_id']}"}


async def refund_payment(ctx):
    print(f"↩️  Refunding {ctx['payment_id']}")


def ship_order(ctx):
    print(f"🚚 Shipping order {ctx['order_id']}")
    return {"tracking": "TRACK-123"}


order = (
    WorkflowDefinition(
        name="order",
        description="Reserve stock, take payment, ship after manual review",
        retry=RetryPolicy(max_attempts=4, initial_delay=0.2, jitter=True),
    )
    .with_step("reserve", reserve_inventory, rollback=release_inventory)
    .with_step("charge", charge_payment, after="reserve", rollback=refund_payment)
    .with_step(
        "ship",
        ship_order,
        after="charge",
        await_approval=True,
        approval_timeout=24 * 3600,
    )
)


async def main():
    engine = WorkflowEngine()
    engine.register(order)

    execution_id = await engine.start_execution("order", {"order_id": 42}, wait=True)
    execution = await engine.get_execution(execution_id)
    print(f"📋 Execution {execution_id} is {execution.status.value}")

    await engine.signal_approval(execution_id, "ship", "approved")
    execution = await engine.wait_for(execution_id)
    print(f"✅ Execution finished as {execution.status.value}: {execution.context}")
    await engine.stop()


if __name__ == "__main__":
    asyncio.run(main())
