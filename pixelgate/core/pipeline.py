# pixelgate/core/pipeline.py
"""
Chained operations.

A pipeline is an ordered list of 1..10 steps.  The whole plan is checked
(length and operation names) before any step runs; each step then receives
the previous step's output.  A failing step marked ``ignoreFailure`` is
skipped and the prior image carries on; any other failure aborts the
pipeline with the step's 1-based position in the message.
"""
from __future__ import annotations

from pixelgate.core.errors import GatewayError, InvalidInputError
from pixelgate.core.operations import PIPELINE_OPERATIONS, Processor
from pixelgate.core.options import PipelineStep, parse_options
from pixelgate.infra.imaging import ProcessedImage, detect_mime
from pixelgate.infra.logging_config import get_logger

logger = get_logger(__name__)

MAX_PIPELINE_OPERATIONS = 10


def validate_plan(steps: list[PipelineStep]) -> None:
    """
    Reject a plan that can never run, before any image work starts.

    Raises:
        InvalidInputError: Empty plan, too many steps, or unknown operation
    """
    if not steps:
        raise InvalidInputError("Missing pipeline operations")
    if len(steps) > MAX_PIPELINE_OPERATIONS:
        raise InvalidInputError(f"Maximum pipeline operations ({MAX_PIPELINE_OPERATIONS}) exceeded")
    for step in steps:
        if step.name not in PIPELINE_OPERATIONS:
            raise InvalidInputError(f"Unsupported operation: {step.name}")


def _annotate(position: int, err: GatewayError) -> GatewayError:
    return type(err)(f"pipeline operation {position} failed: {err.message}", err.status)


async def run_pipeline(processor: Processor, buf: bytes, steps: list[PipelineStep]) -> ProcessedImage:
    validate_plan(steps)

    image = ProcessedImage(body=buf, mime=detect_mime(buf))
    for position, step in enumerate(steps, start=1):
        try:
            opts = parse_options(step.params)
        except InvalidInputError as e:
            raise _annotate(position, e)

        try:
            image = await processor.run(step.name, image.body, opts)
        except GatewayError as e:
            if not step.ignore_failure:
                raise _annotate(position, e)
            logger.info(f"Pipeline step {position} ({step.name}) failed and was skipped: {e.message}")

    return image
