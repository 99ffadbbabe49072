"""Sequential provisioning pipeline.

    resolve -> write -> resize -> uuid

Each stage receives the current :class:`PipelineContext` and returns an
updated copy. A stage failure aborts the run; resources registered during
the run (the loop device of a file target) are released on every exit path.
"""

from __future__ import annotations

from contextlib import ExitStack
from typing import Callable, Optional

from fvf_burner.domain.models import PipelineContext, ResizeStage
from fvf_burner.logging import operation_context
from fvf_burner.storage.commands import ProgressCallback
from fvf_burner.storage.exceptions import ProvisioningError

from .approval import Approver
from .resize import resize_partition
from .resolver import resolve_target
from .uuids import regenerate_uuids
from .writer import write_image

Stage = Callable[[PipelineContext], PipelineContext]


def _run_stage(name: str, stage: Stage, context: PipelineContext) -> PipelineContext:
    with operation_context(name, target=context.request.path or "(interactive)"):
        try:
            return stage(context)
        except ProvisioningError as error:
            if error.step is None:
                error.step = name
            raise


def run_pipeline(
    context: PipelineContext,
    approver: Approver,
    progress_callback: Optional[ProgressCallback] = None,
    skip_resize: bool = False,
) -> PipelineContext:
    """Run every stage against ``context`` and return the final context.

    Raises:
        ProvisioningError: The first failure, with ``step`` set
    """
    with ExitStack() as resources:

        def resolve(ctx: PipelineContext) -> PipelineContext:
            return ctx.evolve(target=resolve_target(ctx.request, approver))

        def write(ctx: PipelineContext) -> PipelineContext:
            return write_image(ctx, approver, resources, progress_callback)

        def resize(ctx: PipelineContext) -> PipelineContext:
            if skip_resize:
                return ctx
            return ctx.evolve(resize=resize_partition(ctx.require_block_device(), approver))

        def regenerate(ctx: PipelineContext) -> PipelineContext:
            return regenerate_uuids(ctx, approver)

        for name, stage in (
            ("resolve", resolve),
            ("write", write),
            ("resize", resize),
            ("uuid", regenerate),
        ):
            context = _run_stage(name, stage, context)

    if context.resize is not None and context.resize.stage is ResizeStage.SKIPPED:
        approver.inform("Partition resize skipped")
    return context
