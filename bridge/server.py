"""
FastAPI server connecting the driving simulator to the highway planner.
Receives telemetry and returns the next path.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

from bridge.telemetry import (
    MANUAL_MESSAGE,
    ControlMessage,
    PlannerStatus,
    Telemetry,
    control_frame,
    parse_socket_message,
)
from highway_stack import HighwayStack

app = FastAPI(title="Highway Planner Bridge Server")

# Log slow planning cycles; the simulator consumes a path point every 20 ms
SLOW_CYCLE_SECONDS = 0.05
TELEMETRY_GAP_SECONDS = 0.5


def _get_bridge_logger() -> logging.Logger:
    log_path = Path(__file__).resolve().parents[1] / "tmp" / "logs" / "highway_bridge.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)

    bridge_logger = logging.getLogger("highway_bridge")
    bridge_logger.setLevel(logging.INFO)

    if not any(isinstance(h, logging.FileHandler) and h.baseFilename == str(log_path)
               for h in bridge_logger.handlers):
        handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
        handler.setFormatter(formatter)
        bridge_logger.addHandler(handler)
        bridge_logger.propagate = False

    return bridge_logger


logger = _get_bridge_logger()

# Global state
planner_stack: Optional[HighwayStack] = None
# Planning cycles mutate planner state and must not overlap
planner_lock = threading.Lock()
last_telemetry_arrival_time: Optional[float] = None
last_lap: int = 0


def set_stack(stack: Optional[HighwayStack]) -> None:
    """Attach the planner the endpoints talk to."""
    global planner_stack, last_telemetry_arrival_time, last_lap
    planner_stack = stack
    last_telemetry_arrival_time = None
    last_lap = 0


def _require_stack() -> HighwayStack:
    if planner_stack is None or not planner_stack.initialized:
        raise HTTPException(status_code=503, detail="Planner not initialized")
    return planner_stack


def handle_telemetry(telemetry: Telemetry) -> ControlMessage:
    """Run one planning cycle for a telemetry message."""
    global last_telemetry_arrival_time, last_lap

    stack = _require_stack()

    now = time.time()
    if last_telemetry_arrival_time is not None:
        gap = now - last_telemetry_arrival_time
        if gap > TELEMETRY_GAP_SECONDS:
            logger.warning("[ARRIVAL_GAP] telemetry gap=%.3fs", gap)
    last_telemetry_arrival_time = now

    start_time = time.time()
    with planner_lock:
        plan = stack.plan(
            telemetry.to_ego_state(),
            telemetry.observations(),
            stack.trajectory_config.dt,
        )
    duration = time.time() - start_time
    if duration > SLOW_CYCLE_SECONDS:
        logger.warning(
            "[SLOW] planning cycle duration=%.3fs previous_points=%d cars=%d",
            duration,
            len(telemetry.previous_path_x),
            len(telemetry.sensor_fusion),
        )
    if plan.lap != last_lap:
        logger.info("Lap %d started", plan.lap)
        last_lap = plan.lap
    if plan.degraded:
        logger.warning("Degraded plan: no new points beyond the previous path")

    return ControlMessage.from_plan(plan)


@app.post("/api/telemetry", response_model=ControlMessage)
def receive_telemetry(telemetry: Telemetry):
    """
    Receive telemetry and return the next path.

    Args:
        telemetry: Ego state, previous path and sensor fusion in simulator units
    """
    return handle_telemetry(telemetry)


@app.websocket("/ws")
async def telemetry_socket(websocket: WebSocket):
    """Socket.io style event stream: ``42["telemetry", {...}]`` in, ``42["control", {...}]`` out."""
    await websocket.accept()
    logger.info("Connected")
    try:
        while True:
            message = await websocket.receive_text()
            event, payload = parse_socket_message(message)
            if event is None:
                continue
            if payload is None:
                # Manual driving
                await websocket.send_text(MANUAL_MESSAGE)
                continue
            if event != "telemetry":
                continue
            try:
                telemetry = Telemetry(**payload)
                control = await run_in_threadpool(handle_telemetry, telemetry)
            except HTTPException as e:
                logger.error("Dropping telemetry: %s", e.detail)
                continue
            except ValueError as e:
                logger.warning("Invalid telemetry payload: %s", e)
                continue
            await websocket.send_text(control_frame(control))
    except WebSocketDisconnect:
        logger.info("Disconnected")


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "planner_initialized": planner_stack is not None and planner_stack.initialized,
        "timestamp": time.time(),
    }


@app.post("/api/reset")
def reset_planner():
    """Reset the planner state (keeps the road map)."""
    stack = _require_stack()
    with planner_lock:
        stack.reset()
    logger.info("Planner reset")
    return {"status": "reset"}


@app.get("/api/planner/state", response_model=PlannerStatus)
def get_planner_state():
    """Current planner state."""
    if planner_stack is None:
        return PlannerStatus(initialized=False)
    with planner_lock:
        state = planner_stack.behavior.state
        return PlannerStatus(
            initialized=planner_stack.initialized,
            state=state.state.name,
            target_lane=state.target_lane,
            target_speed=state.target_speed,
            changing_lane=state.changing_lane,
            collision_warning=state.collision_warning,
            lap=state.laps + 1,
            cycles=planner_stack.cycle_count,
        )


def run_server(stack: HighwayStack, host: str = "0.0.0.0", port: int = 4567):
    """Run the bridge server."""
    set_stack(stack)
    logger.info("Starting highway planner bridge on %s:%d", host, port)
    print(f"Starting Highway Planner Bridge Server on {host}:{port}")
    print("Endpoints:")
    print("  POST /api/telemetry - Plan the next path from telemetry")
    print("  WS   /ws - Socket.io style telemetry/control events")
    print("  POST /api/reset - Reset planner state")
    print("  GET  /api/planner/state - Current planner state")
    print("  GET  /api/health - Health check")

    uvicorn.run(app, host=host, port=port)
