from typing import Protocol, runtime_checkable

from labdesk.core.config import settings


@runtime_checkable
class SampleIdGenerator(Protocol):
    """Produces the sample identifier printed on a request's tube label.

    Implementations must be deterministic for a given (request, revision)
    and unique per request. Revision 0 is the first assignment; every
    explicit regeneration increments it.
    """

    def generate(self, visit_id: int, lab_request_id: int, revision: int = 0) -> str:
        ...


class VisitSequenceSampleIdGenerator:
    """Default format: ``{prefix}{visit_id}-{lab_request_id}[-R{revision}]``"""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix

    def generate(self, visit_id: int, lab_request_id: int, revision: int = 0) -> str:
        sample_id = f"{self.prefix}{visit_id}-{lab_request_id}"
        if revision:
            sample_id = f"{sample_id}-R{revision}"
        return sample_id


def get_sample_id_generator() -> SampleIdGenerator:
    """Dependency returning the configured generator"""
    return VisitSequenceSampleIdGenerator(prefix=settings.SAMPLE_ID_PREFIX)
