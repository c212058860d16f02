"""Azure Function App for build orchestration."""

import json
import logging
import time
import uuid

import azure.functions as func
from pydantic import ValidationError

from config import Settings
from models.requests import DeployBuildRequest
from services.deploy_orchestrator import DeployOrchestrator
from services.errors import MissingBuildError
from services.kubernetes_client import ClusterClient
from services.log_streaming import get_job_events, get_log_streaming_info_for_job
from services.repository import PostgresRepository

app = func.FunctionApp()

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

JSON_HEADERS = {"Content-Type": "application/json"}


def _error_response(message: str, status_code: int, correlation_id: str) -> func.HttpResponse:
    return func.HttpResponse(
        json.dumps({"status": "error", "message": message, "correlation_id": correlation_id}),
        status_code=status_code,
        headers=JSON_HEADERS,
    )


def _build_namespace(settings: Settings, build_uuid: str) -> str | None:
    return PostgresRepository(settings.database_url).get_namespace_for_build(build_uuid)


@app.function_name(name="deploy_build")
@app.route(route="builds/{uuid}/deploy", methods=["POST"], auth_level=func.AuthLevel.FUNCTION)
async def deploy_build(req: func.HttpRequest) -> func.HttpResponse:
    """Build every active service of a build.

    Args:
        req: HTTP request; the body may carry a ``run_uuid``

    Returns:
        HTTP response with the per-deploy outcomes
    """
    correlation_id = str(uuid.uuid4())
    start_time = time.time()
    build_uuid = req.route_params.get("uuid")
    logger.info(
        "DeployBuild function started",
        extra={"correlation_id": correlation_id, "build_uuid": build_uuid},
    )

    try:
        try:
            req_body = req.get_json() or {}
        except ValueError:
            req_body = {}
        deploy_request = DeployBuildRequest(**req_body)

        settings = Settings()
        orchestrator = DeployOrchestrator.from_settings(settings)
        run_uuid = deploy_request.run_uuid or uuid.uuid4().hex
        result = await orchestrator.deploy_build(build_uuid, run_uuid)

        logger.info(
            "DeployBuild function finished",
            extra={
                "correlation_id": correlation_id,
                "build_uuid": build_uuid,
                "success": result.success,
                "duration_seconds": round(time.time() - start_time, 2),
            },
        )
        body = result.model_dump(mode="json")
        body["correlation_id"] = correlation_id
        return func.HttpResponse(json.dumps(body), status_code=200, headers=JSON_HEADERS)

    except MissingBuildError as e:
        logger.warning(str(e), extra={"correlation_id": correlation_id})
        return _error_response(str(e), 404, correlation_id)
    except (ValidationError, ValueError) as e:
        logger.error(
            "Validation error occurred",
            extra={"correlation_id": correlation_id, "error_type": "validation_error", "error_message": str(e)},
        )
        return _error_response(str(e), 400, correlation_id)
    except Exception as e:
        logger.exception(
            "Unexpected error during deploy",
            extra={
                "correlation_id": correlation_id,
                "error_type": type(e).__name__,
                "duration_seconds": round(time.time() - start_time, 2),
            },
        )
        return _error_response("Internal server error", 500, correlation_id)


@app.function_name(name="job_logs")
@app.route(route="builds/{uuid}/jobs/{job_name}/logs", methods=["GET"], auth_level=func.AuthLevel.FUNCTION)
def job_logs(req: func.HttpRequest) -> func.HttpResponse:
    """Log-streaming descriptor for a build Job."""
    correlation_id = str(uuid.uuid4())
    build_uuid = req.route_params.get("uuid")
    job_name = req.route_params.get("job_name")

    try:
        settings = Settings()
        namespace = _build_namespace(settings, build_uuid)
        if namespace is None:
            return _error_response(f"Build {build_uuid} not found", 404, correlation_id)

        info = get_log_streaming_info_for_job(ClusterClient.from_settings(settings), job_name, namespace)
        return func.HttpResponse(
            info.model_dump_json(by_alias=True, exclude_none=True), status_code=200, headers=JSON_HEADERS
        )
    except ValueError as e:
        return _error_response(str(e), 400, correlation_id)
    except Exception:
        logger.exception("Failed to get log streaming info", extra={"correlation_id": correlation_id})
        return _error_response("Internal server error", 500, correlation_id)


@app.function_name(name="job_events")
@app.route(route="builds/{uuid}/jobs/{job_name}/events", methods=["GET"], auth_level=func.AuthLevel.FUNCTION)
def job_events(req: func.HttpRequest) -> func.HttpResponse:
    """Cluster events for a build Job and its pods."""
    correlation_id = str(uuid.uuid4())
    build_uuid = req.route_params.get("uuid")
    job_name = req.route_params.get("job_name")

    try:
        settings = Settings()
        namespace = _build_namespace(settings, build_uuid)
        if namespace is None:
            return _error_response(f"Build {build_uuid} not found", 404, correlation_id)

        events = get_job_events(ClusterClient.from_settings(settings), job_name, namespace)
        return func.HttpResponse(
            json.dumps({"events": [e.model_dump(mode="json", by_alias=True, exclude_none=True) for e in events]}),
            status_code=200,
            headers=JSON_HEADERS,
        )
    except ValueError as e:
        return _error_response(str(e), 400, correlation_id)
    except Exception:
        logger.exception("Failed to get job events", extra={"correlation_id": correlation_id})
        return _error_response("Internal server error", 500, correlation_id)


@app.function_name(name="health")
@app.route(route="health", methods=["GET"], auth_level=func.AuthLevel.ANONYMOUS)
def health_check(req: func.HttpRequest) -> func.HttpResponse:
    """Health check endpoint."""
    return func.HttpResponse(
        json.dumps({"status": "healthy", "service": "build-function"}),
        status_code=200,
        headers=JSON_HEADERS,
    )
