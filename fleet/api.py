from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from fleet import metrics
from fleet.errors import ControllerError, NotFound, RolloutInProgress

router = APIRouter()


class RolloutRequest(BaseModel):
    target_version: str = Field(min_length=1)
    artifact_ref: str = Field(min_length=1)


class CancelRequest(BaseModel):
    reason: str = "operator request"


def _controller(request: Request):
    return request.app.state.controller


@router.get("/healthz")
async def liveness():
    return {"status": "alive"}


@router.get("/ready")
async def readiness(request: Request):
    controller = _controller(request)
    if controller.started:
        return {"status": "ready", "rollout_state": controller.rollout.state.value}
    return JSONResponse(
        status_code=503,
        content={"status": "not_ready", "reason": "controller not started"},
    )


@router.post("/rollouts", status_code=202)
async def start_rollout(req: RolloutRequest, request: Request):
    controller = _controller(request)
    try:
        plan_id = controller.rollout.start_rollout(req.target_version, req.artifact_ref)
    except RolloutInProgress as e:
        return JSONResponse(
            status_code=409,
            content={"error": str(e), "active_plan_id": e.active_plan_id},
        )
    except ControllerError as e:
        return JSONResponse(status_code=409, content={"error": str(e)})
    return controller.rollout.get_status(plan_id)


@router.get("/rollouts")
async def list_rollouts(request: Request):
    return {"rollouts": _controller(request).rollout.list_rollouts()}


@router.get("/rollouts/{plan_id}")
async def rollout_status(plan_id: str, request: Request):
    try:
        return _controller(request).rollout.get_status(plan_id)
    except NotFound as e:
        return JSONResponse(status_code=404, content={"error": str(e)})


@router.post("/rollouts/{plan_id}/cancel", status_code=202)
async def cancel_rollout(plan_id: str, request: Request, req: CancelRequest | None = None):
    controller = _controller(request)
    try:
        controller.rollout.cancel(plan_id, (req or CancelRequest()).reason)
    except NotFound as e:
        return JSONResponse(status_code=404, content={"error": str(e)})
    except ControllerError as e:
        return JSONResponse(status_code=409, content={"error": str(e)})
    return controller.rollout.get_status(plan_id)


@router.get("/fleet")
async def fleet(request: Request):
    return _controller(request).registry.snapshot().to_dict()


@router.get("/scaling")
async def scaling(request: Request):
    autoscaler = _controller(request).autoscaler
    decision = autoscaler.last_decision
    return {
        "last_decision": decision.to_dict() if decision else None,
        "high_streak": autoscaler.high_streak,
        "low_streak": autoscaler.low_streak,
        "config": {
            "min_capacity": autoscaler.config.min_capacity,
            "max_capacity": autoscaler.config.max_capacity,
            "scale_out_threshold": autoscaler.config.scale_out_threshold,
            "scale_in_threshold": autoscaler.config.scale_in_threshold,
            "scale_in_cooldown": autoscaler.config.scale_in_cooldown,
        },
    }


@router.get("/metrics")
async def metrics_endpoint(request: Request):
    metrics.observe_fleet(_controller(request).registry.snapshot())
    return metrics.metrics_response()
