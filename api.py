import os
import threading
from typing import List, Optional
from fastapi import FastAPI, BackgroundTasks, Query, HTTPException
from pydantic import BaseModel

import qsh_converter as qc

app = FastAPI(title="QSH Converter API")


class ConvertRequest(BaseModel):
    source: Optional[str] = None      # directory with .qsh files
    output: Optional[str] = None      # storage root
    kind: str = "deals"               # 'ordlog' or 'deals'
    timeframes: List[str] = []        # e.g. ["1m", "1h"]
    batch_size: Optional[int] = None
    max_workers: Optional[int] = None
    decoder: Optional[str] = None     # module:callable, default $QSH_DECODER
    reconstructor: Optional[str] = None  # module:callable, default fill pairing
    organize: bool = False


# Observer state of the current (or last) run
_RUN_LOCK = threading.Lock()
_RUN_STATE = {
    "running": False,
    "progress": None,
    "errors": [],
    "summary": None,
}


def _on_progress(text: str):
    with _RUN_LOCK:
        _RUN_STATE["progress"] = text


def _on_error(text: str):
    with _RUN_LOCK:
        _RUN_STATE["errors"].append(text)


def _finish_run():
    with _RUN_LOCK:
        _RUN_STATE["running"] = False


@app.on_event("startup")
async def on_startup():
    qc.setup_logging(verbose=True)


@app.post("/convert")
async def convert_endpoint(req: ConvertRequest, background_tasks: BackgroundTasks):
    source = req.source or qc.DEFAULT_SOURCE_DIR
    output = req.output or qc.DEFAULT_OUTPUT_DIR
    try:
        kind = qc.DataKind(req.kind)
        timeframes = [qc.parse_timeframe(t) for t in req.timeframes]
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not os.path.isdir(source):
        raise HTTPException(status_code=400, detail=f"Source directory not found: {source}")

    with _RUN_LOCK:
        if _RUN_STATE["running"]:
            raise HTTPException(status_code=409, detail="A conversion is already running")
        _RUN_STATE.update(running=True, progress="0% ...", errors=[], summary=None)

    # Setup failures are returned to the caller; only the conversion itself runs in the background
    try:
        logger = qc.setup_logging()
        converter = qc.QshConverter(
            output,
            kind,
            logger,
            open_reader=qc.resolve_decoder(req.decoder),
            timeframes=timeframes,
            batch_size=req.batch_size or qc.BATCH_SIZE,
            max_workers=req.max_workers,
            reconstructor_factory=qc.resolve_reconstructor(req.reconstructor),
            on_progress=_on_progress,
            on_error=_on_error,
        )
        if req.organize:
            qc.organize_by_date(source, logger)
    except OSError as e:
        _finish_run()
        raise HTTPException(status_code=500, detail=f"{type(e).__name__}: {e}")
    except (ImportError, AttributeError, ValueError, RuntimeError) as e:
        _finish_run()
        raise HTTPException(status_code=400, detail=f"{type(e).__name__}: {e}")

    def task():
        try:
            summary = converter.convert(source)
            with _RUN_LOCK:
                _RUN_STATE["summary"] = summary.as_dict()
        except Exception as e:
            logger.exception("Conversion run failed")
            _on_error(f"{type(e).__name__}: {e}")
        finally:
            _finish_run()

    background_tasks.add_task(task)
    return {"status": "scheduled"}


@app.get("/progress")
async def progress():
    with _RUN_LOCK:
        return {
            "running": _RUN_STATE["running"],
            "progress": _RUN_STATE["progress"],
            "errors": list(_RUN_STATE["errors"]),
            "summary": _RUN_STATE["summary"],
        }


@app.get("/status")
async def status(output: Optional[str] = Query(None)):
    return qc.storage_status(output or qc.DEFAULT_OUTPUT_DIR)


@app.get("/health")
async def health():
    return {"status": "ok"}
