from __future__ import annotations
from functools import lru_cache
from typing import List, Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .core.errors import (
    CapacityError,
    InvalidSourceError,
    RunboxError,
    UnsupportedLanguageError,
    ValidationError,
)
from .core.models import ExecutionRequest
from .logging import setup_logging
from .runners.registry import REGISTRY
from .services.pipeline import ExecutionPipeline
from .settings import get_settings

log = structlog.get_logger(__name__)

app = FastAPI(title="runbox")

# The editor front-end is served from other origins.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_pipeline() -> ExecutionPipeline:
    return ExecutionPipeline(get_settings())


# --------- Schemas ---------
class ExecuteReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_code: Optional[str] = Field(default=None, alias="sourceCode")
    language: Optional[str] = None


class ExecuteRes(BaseModel):
    output: str
    error: bool


class LanguagesRes(BaseModel):
    languages: List[str]
    tags: List[str]


# --------- Endpoints ---------
@app.get("/health")
def health():
    return {"ok": True}


@app.get("/api/languages", response_model=LanguagesRes)
def languages():
    return LanguagesRes(languages=REGISTRY.languages(), tags=REGISTRY.tags())


@app.post("/api/execute", response_model=ExecuteRes)
def execute(req: ExecuteReq, pipeline: ExecutionPipeline = Depends(get_pipeline)):
    if not req.source_code or not req.language:
        raise HTTPException(status_code=400, detail="Source code and language are required.")
    try:
        result = pipeline.execute(ExecutionRequest(language=req.language, source_code=req.source_code))
    except UnsupportedLanguageError:
        raise HTTPException(status_code=400, detail="Unsupported language.")
    except InvalidSourceError:
        raise HTTPException(status_code=400, detail="Source code must be valid UTF-8.")
    except ValidationError:
        raise HTTPException(status_code=400, detail="Source code and language are required.")
    except CapacityError:
        raise HTTPException(status_code=503, detail="Server busy, try again later.")
    except RunboxError:
        log.exception("execution_failed", language=req.language)
        return JSONResponse(status_code=500, content={"output": "Execution failed: internal error", "error": True})
    return ExecuteRes(output=result.output, error=result.is_error)


@app.exception_handler(Exception)
async def unhandled(_request, exc: Exception):
    log.error("unhandled_error", error_type=type(exc).__name__, error=str(exc))
    return JSONResponse(status_code=500, content={"output": "Execution failed: internal error", "error": True})


def main() -> None:
    setup_logging()
    settings = get_settings()
    log.info("starting", port=settings.port, isolation=get_pipeline().sandbox.iso.describe())
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
