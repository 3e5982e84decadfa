"""Transform plan factory: writes userdata headers and bakes the three plans."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from xcorr_compiler.program import CorrelationProgram
from xcorr_runtime.backend import DeviceBuffer, TransformPlan
from xcorr_runtime.context import DeviceContext
from xcorr_runtime.errors import ResourceAllocationError

logger = logging.getLogger(__name__)

PLAN_ORDER = ("reference", "input", "correlation")


@dataclass
class PlanSet:
    """The correlator's baked plans."""

    reference: TransformPlan
    input: TransformPlan
    correlation: TransformPlan

    def __iter__(self):
        return iter((self.reference, self.input, self.correlation))


class PlanFactory:
    def __init__(self, context: DeviceContext):
        self._context = context

    def write_headers(self, program: CorrelationProgram, buffers: Mapping[str, DeviceBuffer]) -> None:
        """Blocking write of each userdata header at offset 0."""
        backend = self._context.backend
        for name, header in program.userdata_headers.items():
            backend.write(buffers[name], header, 0)

    def build(self, program: CorrelationProgram, buffers: Mapping[str, DeviceBuffer]) -> PlanSet:
        """Write headers, then bake reference, input and correlation plans.

        A failure destroys any plan already baked before re-raising.
        """
        self.write_headers(program, buffers)
        backend = self._context.backend
        baked: dict[str, TransformPlan] = {}
        try:
            for name in PLAN_ORDER:
                spec = program.plans[name]
                for buffer_name in (spec.input_buffer, spec.output_buffer,
                                    spec.load_userdata, spec.store_userdata):
                    if buffer_name is not None and buffer_name not in buffers:
                        raise ResourceAllocationError(
                            f"plan needs unallocated buffer '{buffer_name}'",
                            operation=f"create_plan:{name}",
                        )
                baked[name] = backend.create_plan(spec, buffers)
                logger.debug("plan %s baked (batch=%d)", name, spec.batch)
        except ResourceAllocationError:
            for plan in reversed(list(baked.values())):
                backend.destroy_plan(plan)
            raise
        return PlanSet(**baked)

    def destroy(self, plans: PlanSet) -> None:
        backend = self._context.backend
        for plan in reversed(list(plans)):
            backend.destroy_plan(plan)
