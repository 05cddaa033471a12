from __future__ import annotations

from fastapi import APIRouter, Depends

from api.auth import AuthDep
from api.deps import get_service
from api.errors import ApiError
from api.schemas.versions import VersionRequest
from forge.core.models import SolarForgeByIssueResult, SolarForgeByVersionResult, Version
from forge.donations.views import SqliteVersionSource
from forge.service import DonationService

router = APIRouter(dependencies=[AuthDep])


@router.get("/issues/{issue_id}/solar-forge", response_model=SolarForgeByIssueResult)
def solar_forge_by_issue(issue_id: str, service: DonationService = Depends(get_service)) -> SolarForgeByIssueResult:
    result = service.queries.get_solar_forge_by_issue(issue_id)
    if result.error is not None:
        raise ApiError(code="solar_forge.not_found", message=result.error, status=404, issue_id=issue_id)
    return result


@router.get("/versions/{version_id}/solar-forge", response_model=SolarForgeByVersionResult)
def solar_forge_by_version(
    version_id: str, service: DonationService = Depends(get_service)
) -> SolarForgeByVersionResult:
    result = service.queries.get_solar_forge_by_version(version_id)
    if result.error is not None:
        raise ApiError(code="version.not_found", message=result.error, status=404, version_id=version_id)
    return result


@router.put("/versions/{version_id}", response_model=Version)
def put_version(
    version_id: str, req: VersionRequest, service: DonationService = Depends(get_service)
) -> Version:
    source = service.views.version_source
    if not isinstance(source, SqliteVersionSource):
        raise ApiError(
            code="version.read_only",
            message="Version facts are owned by an external source",
            status=409,
            version_id=version_id,
        )
    return source.put_version(Version(id=version_id, **req.model_dump()))
