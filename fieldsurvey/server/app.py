"""
Append-log sink server. Every POST is appended, as a delimited text block,
to a log file named after the session it belongs to.
"""

import json
import threading
from pathlib import Path

import structlog
from fastapi import FastAPI
from pydantic import BaseModel, ConfigDict, Field

from ..settings import settings
from ..survey.core import Vertex


class CoordinatesPayload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    session_id: str = Field(alias="sessionId", pattern=r"^[A-Za-z0-9_-]{1,128}$")
    vertices: list[Vertex] = []


class Acknowledgement(BaseModel):
    message: str


def format_block(payload: CoordinatesPayload) -> str:
    # Unset fields are left out so the log holds only what the client sent.
    body = json.dumps(
        payload.model_dump(mode="json", by_alias=True, exclude_unset=True), indent=2
    )

    return (
        "\n----------------\n"
        f"Session ID: {payload.session_id}\n"
        f"Received data: {body}\n"
        "----------------\n"
    )


def create_app(log_dir: Path | None = None) -> FastAPI:
    log_dir = Path(log_dir or settings.log_dir)
    write_lock = threading.Lock()

    app = FastAPI(
        title="fieldsurvey append log",
        openapi_tags=[
            {
                "name": "Coordinates",
                "description": "Best-effort log of survey sessions as they are walked.",
            }
        ],
    )

    @app.post(
        "/api/v1/coordinates",
        response_model=Acknowledgement,
        tags=["Coordinates"],
        summary="Append a session snapshot to its log.",
    )
    def post_coordinates(payload: CoordinatesPayload):
        log = structlog.get_logger().bind(
            session_id=payload.session_id, count=len(payload.vertices)
        )

        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"{payload.session_id}.log"

        with write_lock:
            with log_file.open("a") as handle:
                handle.write(format_block(payload))

        log.info("sink.server.appended", log_file=str(log_file))

        return Acknowledgement(message="Data received successfully")

    return app


app = create_app()
