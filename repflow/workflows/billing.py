"""Subscription lifecycle workflows triggered by billing webhooks."""

from __future__ import annotations

from typing import List, Optional

from ..contracts import Step, WorkflowDefinition, workflow
from ..events import (
    PaymentActionRequired,
    PaymentFailed,
    PlanChanged,
    SubscriptionCanceled,
    SubscriptionCreated,
    TrialConverted,
    TrialEnding,
)
from ..notify import Notification
from ..quota import QuotaService


def plan_for_tier(tier: Optional[str]) -> str:
    """Quota plan for a billing tier; every paid tier gets unlimited generation."""
    return "free" if not tier or tier == "free" else "pro"


def _quotas(ctx) -> QuotaService:
    return ctx.services.quotas or QuotaService(ctx.services.require_db(), ctx.services.clock)


def _email(ctx, step: str, user_id: str, title: str, body: str, **data) -> Notification:
    return Notification(
        user_id=user_id,
        kind="email",
        title=title,
        body=body,
        data=data,
        idempotency_key=f"{ctx.run_id}:{step}",
    )


def _sync_step(name: str, tier_of) -> Step:
    async def sync(ctx):
        user_id = ctx.data["user_id"]
        plan = plan_for_tier(tier_of(ctx))
        await _quotas(ctx).sync_limits(user_id, plan)
        return {"plan": plan}

    return Step.run(name, sync)


def _send_step(name: str, build, when=None) -> Step:
    async def send(ctx):
        notification = build(ctx)
        await ctx.services.notifier.send(notification)
        return {"sent": notification.kind, "title": notification.title}

    return Step.run(name, send, when=when)


# created / changed ------------------------------------------------------

def _welcome(ctx, step: str, tier: str, trialing: bool) -> Notification:
    user_id = ctx.data["user_id"]
    if trialing:
        return _email(
            ctx, step, user_id,
            f"Your {tier} trial has started",
            "Explore AI workout generation and coaching for your whole circle.",
            tier=tier, trialing=True,
        )
    return _email(
        ctx, step, user_id,
        f"Welcome to {tier}",
        "Your subscription is active. Unlimited AI workouts are ready when you are.",
        tier=tier, trialing=False,
    )


def _log_plan_change(ctx):
    change = ctx.parse(PlanChanged)
    ctx.logger.info(f"Plan changed: user={change.user_id} {change.previous_tier} -> {change.new_tier}")
    return True


# trials -----------------------------------------------------------------

def _trial_ending(ctx) -> Notification:
    trial = ctx.parse(TrialEnding)
    return _email(
        ctx, "send-trial-ending-email", trial.user_id,
        "Your trial ends soon",
        f"Your trial ends on {trial.trial_end}. Add a payment method to keep your plan.",
        trial_end=trial.trial_end,
    )


# cancellation -----------------------------------------------------------

def _winback(day: int):
    def build(ctx) -> Notification:
        canceled = ctx.parse(SubscriptionCanceled)
        return _email(
            ctx, f"send-winback-day{day}", canceled.user_id,
            "We miss you" if day <= 3 else f"Come back to {canceled.previous_tier}",
            f"It has been {day} days since you left {canceled.previous_tier}. "
            "Your circle's history and goals are still here.",
            previous_tier=canceled.previous_tier, day=day,
        )

    return build


# payments ---------------------------------------------------------------

def _payment_failed(ctx) -> Notification:
    failed = ctx.parse(PaymentFailed)
    return _email(
        ctx, "send-payment-failed-email", failed.user_id,
        "Payment failed",
        f"We could not charge your card (attempt {failed.attempt_count}). Please update your payment method.",
        invoice_id=failed.invoice_id, attempt_count=failed.attempt_count,
    )


def _action_required(ctx) -> Notification:
    required = ctx.parse(PaymentActionRequired)
    return _email(
        ctx, "send-action-required-email", required.user_id,
        "Confirm your payment",
        "Your bank needs you to confirm the latest payment.",
        invoice_id=required.invoice_id, hosted_invoice_url=required.hosted_invoice_url,
    )


def billing_workflows() -> List[WorkflowDefinition]:
    return [
        workflow(
            "billing-subscription-created",
            name="Billing: Subscription Created",
            event="billing/subscription.created",
            retries=3,
            steps=[
                _sync_step("sync-quota-limits", lambda ctx: ctx.parse(SubscriptionCreated).tier),
                _send_step(
                    "send-welcome-email",
                    lambda ctx: _welcome(
                        ctx,
                        "send-welcome-email",
                        ctx.parse(SubscriptionCreated).tier,
                        ctx.parse(SubscriptionCreated).is_trialing,
                    ),
                ),
            ],
            finish=lambda ctx: {
                "user_id": ctx.data["user_id"],
                "tier": ctx.data["tier"],
                "is_trialing": ctx.data.get("is_trialing", False),
            },
        ),
        workflow(
            "billing-plan-changed",
            name="Billing: Plan Changed",
            event="billing/plan.changed",
            retries=3,
            steps=[
                _sync_step("sync-quota-limits", lambda ctx: ctx.parse(PlanChanged).new_tier),
                Step.run("log-plan-change", _log_plan_change),
            ],
            finish=lambda ctx: {
                "user_id": ctx.data["user_id"],
                "previous_tier": ctx.data["previous_tier"],
                "new_tier": ctx.data["new_tier"],
            },
        ),
        workflow(
            "billing-trial-ending",
            name="Billing: Trial Ending Soon",
            event="billing/trial.ending",
            retries=2,
            steps=[
                _send_step(
                    "send-trial-ending-email",
                    _trial_ending,
                    when=lambda ctx: bool(ctx.data.get("trial_end")),
                ),
            ],
            finish=lambda ctx: {"user_id": ctx.data["user_id"], "trial_end": ctx.data.get("trial_end")},
        ),
        workflow(
            "billing-trial-converted",
            name="Billing: Trial Converted to Paid",
            event="billing/trial.converted",
            retries=2,
            steps=[
                _send_step(
                    "send-conversion-email",
                    lambda ctx: _welcome(ctx, "send-conversion-email", ctx.parse(TrialConverted).tier, False),
                ),
            ],
            finish=lambda ctx: {"user_id": ctx.data["user_id"], "tier": ctx.data["tier"]},
        ),
        workflow(
            "billing-subscription-canceled",
            name="Billing: Cancellation Win-back",
            event="billing/subscription.canceled",
            retries=2,
            steps=[
                _sync_step("sync-quota-to-free", lambda ctx: "free"),
                Step.sleep("wait-3-days", "3d"),
                _send_step("send-winback-day3", _winback(3)),
                Step.sleep("wait-11-more-days", "11d"),
                _send_step("send-winback-day14", _winback(14)),
            ],
            finish=lambda ctx: {
                "user_id": ctx.data["user_id"],
                "previous_tier": ctx.data["previous_tier"],
            },
        ),
        workflow(
            "billing-payment-failed",
            name="Billing: Payment Failed",
            event="billing/payment.failed",
            retries=2,
            steps=[_send_step("send-payment-failed-email", _payment_failed)],
            finish=lambda ctx: {
                "user_id": ctx.data["user_id"],
                "invoice_id": ctx.data["invoice_id"],
                "attempt_count": ctx.data.get("attempt_count", 1),
            },
        ),
        workflow(
            "billing-payment-action-required",
            name="Billing: Payment Action Required",
            event="billing/payment.action_required",
            retries=2,
            steps=[_send_step("send-action-required-email", _action_required)],
            finish=lambda ctx: {"user_id": ctx.data["user_id"], "invoice_id": ctx.data["invoice_id"]},
        ),
    ]
