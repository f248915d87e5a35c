from fastapi import FastAPI, HTTPException, BackgroundTasks
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from pydantic import BaseModel, Field
from typing import Dict, Any, Optional, List
import logging
import uvicorn
from datetime import datetime
from pathlib import Path
import json
import math
import os

from model_race import __version__
from model_race.config import get_config
from model_race.pipeline import ModelRacePipeline
from model_race.racing.selection import FinalModel, METADATA_FILE

logger = logging.getLogger(__name__)

# Global pipeline instance
pipeline: Optional[ModelRacePipeline] = None

# Loaded models, keyed by project
_model_cache: Dict[str, FinalModel] = {}

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the pipeline on startup"""
    global pipeline
    try:
        pipeline = ModelRacePipeline(get_config())
        logger.info("Pipeline initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize pipeline: {str(e)}")
        raise
    yield
    _model_cache.clear()

# Initialize FastAPI app
app = FastAPI(
    title="Model Race API",
    description="REST API for racing candidate models and serving the winner",
    version=__version__,
    lifespan=lifespan
)

if get_config().api.ENABLE_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

class RaceRequest(BaseModel):
    data_path: str
    target_column: str
    project_name: Optional[str] = None
    metric: Optional[str] = None

class RaceResponse(BaseModel):
    status: str
    project_name: str
    message: str

class StatusResponse(BaseModel):
    status: str
    current_step: Optional[str] = None
    next_action: Optional[str] = None
    execution_log: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

class PredictionRequest(BaseModel):
    records: List[Dict[str, Any]]
    include_probabilities: bool = False

class PredictionResponse(BaseModel):
    project_name: str
    model: str
    predictions: List[Any]
    probabilities: Optional[List[Dict[str, float]]] = None

def _require_pipeline() -> ModelRacePipeline:
    if pipeline is None:
        raise HTTPException(status_code=500, detail="Pipeline not initialized")
    return pipeline

def _artifact_dir(project_name: str) -> Path:
    return Path(get_config().paths.MODELS_DIR) / project_name / "artifacts"

def _load_model(project_name: str) -> FinalModel:
    if project_name not in _model_cache:
        artifact_dir = _artifact_dir(project_name)
        if not (artifact_dir / METADATA_FILE).exists():
            raise HTTPException(status_code=404, detail=f"No model saved for project '{project_name}'")
        _model_cache[project_name] = FinalModel.load(artifact_dir)
    return _model_cache[project_name]

def _to_native(value: Any) -> Any:
    """JSON-safe scalar from numpy values"""
    if hasattr(value, 'item'):
        value = value.item()
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "timestamp": datetime.now().isoformat()}

@app.post("/race/run", response_model=RaceResponse)
async def run_race(request: RaceRequest, background_tasks: BackgroundTasks):
    """Start a new race in the background"""
    _require_pipeline()

    # Validate that data file exists
    if not os.path.exists(request.data_path):
        raise HTTPException(status_code=400, detail=f"Data file not found: {request.data_path}")

    project_name = request.project_name or f"race_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

    background_tasks.add_task(
        run_race_background,
        request.data_path,
        request.target_column,
        project_name,
        request.metric
    )

    return RaceResponse(
        status="started",
        project_name=project_name,
        message=f"Race started. Use /race/status/{project_name} to check progress."
    )

async def run_race_background(data_path: str, target_column: str, project_name: str,
                              metric: Optional[str]):
    """Run the race in background"""
    if pipeline is None:
        logger.error("Pipeline not initialized")
        return

    result = await pipeline.run_pipeline(
        data_path=data_path,
        target_column=target_column,
        project_name=project_name,
        metric=metric
    )
    # A new winner replaces any cached model for this project
    _model_cache.pop(project_name, None)
    logger.info(f"Race {result.get('status')} for project: {project_name}")

@app.get("/race/status/{project_name}", response_model=StatusResponse)
async def get_race_status(project_name: str):
    """Get the status of a race"""
    status = _require_pipeline().get_pipeline_status(project_name)

    if status.get("status") == "not_found":
        raise HTTPException(status_code=404, detail="Project not found")

    return StatusResponse(
        status=status.get("status", "unknown"),
        current_step=status.get("current_step"),
        next_action=status.get("next_action"),
        execution_log=status.get("execution_log", []),
        errors=status.get("errors", [])
    )

@app.get("/race/projects")
async def list_projects():
    """List all race projects"""
    return {"projects": _require_pipeline().list_projects()}

@app.get("/models/{project_name}")
async def get_model(project_name: str):
    """Metadata and race report of a project's final model"""
    model = _load_model(project_name)

    report = None
    report_path = Path(get_config().paths.MODELS_DIR) / project_name / "race_report.json"
    if report_path.exists():
        with open(report_path, 'r') as f:
            report = json.load(f)

    return {
        "project_name": project_name,
        "model": model.metadata(),
        "race_report": report
    }

@app.post("/models/{project_name}/predict", response_model=PredictionResponse)
async def predict(project_name: str, request: PredictionRequest):
    """Predict with a project's final model"""
    model = _load_model(project_name)

    if not request.records:
        raise HTTPException(status_code=400, detail="No records to predict")

    try:
        predictions = [_to_native(p) for p in model.predict(request.records)]

        probabilities = None
        if request.include_probabilities:
            if model.task != "classification":
                raise HTTPException(status_code=400,
                                    detail="Probabilities are only available for classification models")
            frame = model.predict_proba(request.records)
            probabilities = [
                {column: float(value) for column, value in row.items()}
                for row in frame.to_dict(orient="records")
            ]

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Prediction failed for {project_name}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

    return PredictionResponse(
        project_name=project_name,
        model=model.candidate.name,
        predictions=predictions,
        probabilities=probabilities
    )

@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Model Race API",
        "version": __version__,
        "docs": "/docs",
        "health": "/health"
    }

if __name__ == "__main__":
    from model_race.utils.logging_config import initialize_default_logging

    config = get_config()
    initialize_default_logging(config.logging_level, str(config.paths.LOGS_DIR))
    uvicorn.run(
        "model_race.api.main:app",
        host=config.api.HOST,
        port=config.api.PORT,
        log_level="info"
    )
