"""
Step-based provisioning engine.

This package provides the infrastructure for building images from a list of
remote provisioning steps:
- Shared state bag with cancellation
- Retry policies for transient provider errors
- Async operation execution and resource readiness polling
- Step runner with reverse-order cleanup

Usage:
    from imagebuilder.provisioning import ImageBuilder, OperationStep, WaitForReadyStep

    builder = ImageBuilder()
    state = builder.prepare({"config": config})

    result = builder.run([
        OperationStep("create_service", start=create_service, undo=delete_service, executor=executor),
        WaitForReadyStep("wait_for_vm", query=power_state, poller=poller,
                         terminal_states=POWER_TERMINAL_STATES,
                         failure_states=POWER_FAILURE_STATES),
    ], state)

    if result.outcome is BuildOutcome.FAILED:
        print(result.error)
"""

from imagebuilder.provisioning.state import (
    StateBag,
    StateKey,
)
from imagebuilder.provisioning.retry import (
    ConstantBackoffRule,
    ExponentialBackoffRule,
    RetryPolicy,
    RetryRule,
    default_retry_policy,
    match_any,
    match_code,
)
from imagebuilder.provisioning.operations import (
    AsyncOperationExecutor,
    OperationOutcome,
    OperationState,
    OperationStatus,
    execute_async_operation,
)
from imagebuilder.provisioning.poller import (
    ResourcePoller,
    poll_until_ready,
    wait_for_deletion,
)
from imagebuilder.provisioning.interruptible import (
    InterruptibleTask,
    InterruptibleTaskResult,
    start_interruptible_task,
)
from imagebuilder.provisioning.runner import (
    RunResult,
    RunnerState,
    Step,
    StepAction,
    StepRunner,
)
from imagebuilder.provisioning.steps import (
    BaseStep,
    CallableStep,
    InterruptibleStep,
    OperationStep,
    WaitForReadyStep,
    process_interruptible_result,
)
from imagebuilder.provisioning.builder import (
    BuildOutcome,
    BuildResult,
    ImageBuilder,
)

__all__ = [
    "StateBag",
    "StateKey",
    "ConstantBackoffRule",
    "ExponentialBackoffRule",
    "RetryPolicy",
    "RetryRule",
    "default_retry_policy",
    "match_any",
    "match_code",
    "AsyncOperationExecutor",
    "OperationOutcome",
    "OperationState",
    "OperationStatus",
    "execute_async_operation",
    "ResourcePoller",
    "poll_until_ready",
    "wait_for_deletion",
    "InterruptibleTask",
    "InterruptibleTaskResult",
    "start_interruptible_task",
    "RunResult",
    "RunnerState",
    "Step",
    "StepAction",
    "StepRunner",
    "BaseStep",
    "CallableStep",
    "InterruptibleStep",
    "OperationStep",
    "WaitForReadyStep",
    "process_interruptible_result",
    "BuildOutcome",
    "BuildResult",
    "ImageBuilder",
]
