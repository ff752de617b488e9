"""
Campaign simulator FastAPI server.

The HTTP boundary: request schemas validate externally supplied values,
handlers translate them into typed calls on one CampaignSimulation, and
results render as JSON.

Endpoints:
- GET  /health
- GET  /time                          - Current game time and pause state
- POST /time                          - Administrative absolute set
- POST /time/pause, /time/resume
- POST /time/tick                     - Drain due events, advance one step
- POST /time/fast-forward             - Jump ahead N hours
- POST /campaigns                     - Start a cycle
- GET  /campaigns/{player_id}         - Latest cycle + phase progress
- GET  /campaigns/{player_id}/history
- POST /campaigns/{player_id}/activities
- POST /campaigns/{player_id}/pause, /resume  - Freeze or unfreeze one cycle
- GET  /campaigns/{player_id}/result
- GET  /polling/{player_id}/snapshots?poll_type=T
- POST /polling/{player_id}/snapshots  - Commission a poll now
- GET  /polling/{player_id}/trend?window_hours=N&poll_type=T&state_code=S

Simulator errors map to status codes in one exception handler; malformed
requests are reported the same way, as a 400 ValidationError.
"""

import logging
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..clock.clock import format_game_time
from ..clock.engine import TickReport
from ..config import SimConfig
from ..errors import (
    ActionNotPermittedError,
    CampaignNotFoundError,
    CampaignPausedError,
    CycleAlreadyActiveError,
    CycleSequenceError,
    DuplicateEventError,
    IncompleteDataError,
    InsufficientDataError,
    InvalidTimeError,
    InvalidTransitionError,
    SimulationError,
    StaleWriteError,
    ValidationError,
)
from ..simulation.runner import CampaignSimulation
from ..state.schema import (
    CampaignPhaseState,
    ElectionResolutionResult,
    PollingAggregate,
    PollingSnapshot,
    PollType,
)
from ..validation import PLAYER_ID_PATTERN, validate_state_code
from .schemas import (
    MAX_REQUEST_HOURS,
    ActivityRequest,
    CampaignProgress,
    CampaignResponse,
    CommissionPollRequest,
    ErrorResponse,
    EventFailureInfo,
    FastForwardRequest,
    GameTime,
    SetTimeRequest,
    StartCampaignRequest,
    TickResponse,
    TimeResponse,
)


logger = logging.getLogger(__name__)

# Path parameter shared by every per-player route
PlayerIdPath = Annotated[str, Path(pattern=PLAYER_ID_PATTERN.pattern)]


ERROR_STATUS: dict[type[SimulationError], int] = {
    ValidationError: 400,
    InvalidTimeError: 400,
    CampaignNotFoundError: 404,
    DuplicateEventError: 409,
    CycleAlreadyActiveError: 409,
    CycleSequenceError: 409,
    StaleWriteError: 409,
    InvalidTransitionError: 409,
    ActionNotPermittedError: 409,
    CampaignPausedError: 409,
    InsufficientDataError: 422,
    IncompleteDataError: 422,
}


def status_for(error: SimulationError) -> int:
    for cls in type(error).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


def create_app(
    simulation: CampaignSimulation | None = None,
    config: SimConfig | None = None,
    data_dir: str | None = None,
) -> FastAPI:
    """
    Create the FastAPI application around one simulation.

    Pass ``simulation`` to share an existing world (tests do); otherwise
    one is built from ``config`` and ``data_dir``.
    """
    sim = simulation or CampaignSimulation.create(config, data_dir=data_dir)

    app = FastAPI(
        title="Campaign Simulator API",
        description="Game clock, campaign phases, polling and election results",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.sim = sim
    sim.engine.start()

    def get_sim() -> CampaignSimulation:
        return app.state.sim

    @app.exception_handler(SimulationError)
    async def simulation_error_handler(request: Request, exc: SimulationError):
        status = status_for(exc)
        if status >= 500:
            logger.error("Unmapped simulator error on %s: %s", request.url.path, exc)
        body = ErrorResponse(error=type(exc).__name__, detail=str(exc))
        return JSONResponse(status_code=status, content=body.model_dump())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        # loc is ("body" | "query" | "path", field, ...)
        field = ".".join(str(part) for part in first.get("loc", ())[1:]) or "request"
        detail = f"Invalid {field}: {first.get('msg', 'malformed request')}"
        body = ErrorResponse(error="ValidationError", detail=detail)
        return JSONResponse(status_code=400, content=body.model_dump())

    def time_response(sim: CampaignSimulation) -> TimeResponse:
        return TimeResponse(
            game_time=format_game_time(sim.engine.get_game_time()),
            paused=sim.engine.is_paused(),
        )

    def tick_response(sim: CampaignSimulation, report: TickReport) -> TickResponse:
        return TickResponse(
            game_time=format_game_time(report.game_time),
            paused=sim.engine.is_paused(),
            advanced_hours=report.advanced_hours,
            processed=report.processed_ids,
            failures=[
                EventFailureInfo(event_id=f.event_id, kind=f.kind.value, error=str(f.error))
                for f in report.failures
            ],
        )

    def campaign_response(sim: CampaignSimulation, player_id: str) -> CampaignResponse:
        return CampaignResponse(
            campaign=sim.campaign(player_id),
            progress=CampaignProgress(**sim.progress(player_id)),
        )

    # -------------------------------------------------------------------------
    # Clock
    # -------------------------------------------------------------------------

    @app.get("/health")
    def health_check():
        return {"ok": True, "service": "campaign-sim"}

    @app.get("/time", response_model=TimeResponse)
    def get_time(sim: CampaignSimulation = Depends(get_sim)):
        return time_response(sim)

    @app.post("/time", response_model=TimeResponse)
    def set_time(request: SetTimeRequest, sim: CampaignSimulation = Depends(get_sim)):
        sim.engine.set_game_time(request.time)
        return time_response(sim)

    @app.post("/time/pause", response_model=TimeResponse)
    def pause(sim: CampaignSimulation = Depends(get_sim)):
        sim.engine.pause()
        return time_response(sim)

    @app.post("/time/resume", response_model=TimeResponse)
    def resume(sim: CampaignSimulation = Depends(get_sim)):
        sim.engine.resume()
        return time_response(sim)

    @app.post("/time/tick", response_model=TickResponse)
    def tick(sim: CampaignSimulation = Depends(get_sim)):
        return tick_response(sim, sim.engine.tick_once())

    @app.post("/time/fast-forward", response_model=TickResponse)
    def fast_forward(request: FastForwardRequest, sim: CampaignSimulation = Depends(get_sim)):
        return tick_response(sim, sim.engine.fast_forward(request.hours))

    # -------------------------------------------------------------------------
    # Campaigns
    # -------------------------------------------------------------------------

    @app.post("/campaigns", response_model=CampaignResponse, status_code=201)
    def start_campaign(request: StartCampaignRequest, sim: CampaignSimulation = Depends(get_sim)):
        sim.start_campaign(
            request.player_id,
            request.cycle_sequence,
            candidate_id=request.candidate_id,
            opponent_id=request.opponent_id,
        )
        return campaign_response(sim, request.player_id)

    @app.get("/campaigns/{player_id}", response_model=CampaignResponse)
    def get_campaign(player_id: PlayerIdPath, sim: CampaignSimulation = Depends(get_sim)):
        return campaign_response(sim, player_id)

    @app.get("/campaigns/{player_id}/history", response_model=list[CampaignPhaseState])
    def get_history(player_id: PlayerIdPath, sim: CampaignSimulation = Depends(get_sim)):
        history = sim.history(player_id)
        if not history:
            raise CampaignNotFoundError(player_id)
        return history

    @app.post("/campaigns/{player_id}/activities", response_model=CampaignResponse)
    def record_activity(
        player_id: PlayerIdPath,
        request: ActivityRequest,
        sim: CampaignSimulation = Depends(get_sim),
    ):
        known = {row.code for row in sim.baseline.states()}
        sim.record_activity(
            player_id,
            request.action,
            validate_state_code(request.state_code, known=known),
            request.magnitude,
        )
        return campaign_response(sim, player_id)

    @app.post("/campaigns/{player_id}/pause", response_model=CampaignResponse)
    def pause_campaign(player_id: PlayerIdPath, sim: CampaignSimulation = Depends(get_sim)):
        sim.pause_campaign(player_id)
        return campaign_response(sim, player_id)

    @app.post("/campaigns/{player_id}/resume", response_model=CampaignResponse)
    def resume_campaign(player_id: PlayerIdPath, sim: CampaignSimulation = Depends(get_sim)):
        sim.resume_campaign(player_id)
        return campaign_response(sim, player_id)

    @app.get("/campaigns/{player_id}/result", response_model=ElectionResolutionResult)
    def get_result(player_id: PlayerIdPath, sim: CampaignSimulation = Depends(get_sim)):
        result = sim.result(player_id)
        if result is None:
            raise HTTPException(status_code=409, detail="Election not resolved yet")
        return result

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    @app.get("/polling/{player_id}/snapshots", response_model=list[PollingSnapshot])
    def get_snapshots(
        player_id: PlayerIdPath,
        since: GameTime | None = None,
        until: GameTime | None = None,
        poll_type: PollType | None = None,
        sim: CampaignSimulation = Depends(get_sim),
    ):
        return sim.snapshots(player_id, since=since, until=until, poll_type=poll_type)

    @app.post("/polling/{player_id}/snapshots", response_model=PollingSnapshot, status_code=201)
    def commission_poll(
        player_id: PlayerIdPath,
        request: CommissionPollRequest,
        sim: CampaignSimulation = Depends(get_sim),
    ):
        state_code = request.state_code
        if state_code is not None:
            known = {row.code for row in sim.baseline.states()}
            state_code = validate_state_code(state_code, known=known)
        return sim.commission_poll(player_id, request.poll_type, state_code)

    @app.get("/polling/{player_id}/trend", response_model=PollingAggregate)
    def get_trend(
        player_id: PlayerIdPath,
        window_hours: Annotated[int, Query(gt=0, le=MAX_REQUEST_HOURS)],
        poll_type: PollType = PollType.NATIONAL,
        state_code: str | None = None,
        sim: CampaignSimulation = Depends(get_sim),
    ):
        if state_code is not None:
            state_code = validate_state_code(state_code)
        return sim.aggregate(player_id, window_hours, poll_type=poll_type, state_code=state_code)

    return app
