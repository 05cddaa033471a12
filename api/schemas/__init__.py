from api.schemas.common import ErrorDetail, ErrorResponse, PaginatedResponse
from api.schemas.legs import InitiateLegRequest, LegOutcomeResponse, ProcessorLegRequest
from api.schemas.versions import VersionRequest

__all__ = [
    "ErrorDetail",
    "ErrorResponse",
    "InitiateLegRequest",
    "LegOutcomeResponse",
    "PaginatedResponse",
    "ProcessorLegRequest",
    "VersionRequest",
]
