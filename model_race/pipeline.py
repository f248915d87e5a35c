# model_race/pipeline.py
from langgraph.graph import StateGraph, END
from typing import TypedDict, Any, Dict, Optional, List
import pandas as pd
from datetime import datetime
from pathlib import Path
import json
import logging

from model_race.config import Config, get_config

logger = logging.getLogger(__name__)

# Graph order; each node hands over to the next unless it reports an error
PIPELINE_STEPS = [
    "data_ingestion",
    "data_validation",
    "preparation",
    "candidate_generation",
    "resampling",
    "race",
    "selection",
    "persistence",
]

class RaceState(TypedDict, total=False):
    """State shared across all agents"""
    # Input
    data_path: str
    target_column: str
    project_name: str
    metric: Optional[str]

    # Data
    raw_data: Optional[pd.DataFrame]
    data_info: Optional[dict]
    validation_report: Optional[dict]
    task_type: Optional[str]
    label_encoder: Optional[Any]
    train_dataset: Optional[Any]
    test_dataset: Optional[Any]

    # Race
    candidates: Optional[list]
    partitions: Optional[list]
    race_result: Optional[Any]

    # Selection and persistence
    final_model: Optional[Any]
    test_metrics: Optional[dict]
    race_report: Optional[dict]
    artifacts: Optional[dict]

    # Workflow
    status: str
    current_step: str
    next_action: str
    errors: List[str]
    execution_log: List[str]

class ModelRacePipeline:
    def __init__(self, config: Optional[Config] = None):
        """Initialize the model race pipeline"""
        self.config = config or get_config()

        # Progress per project, updated as the graph streams
        self._status: Dict[str, dict] = {}

        # Build the graph
        self.graph = self._build_graph()
        self.compiled_graph = self.graph.compile()

        logger.info("Model race pipeline initialized successfully")

    def _build_graph(self) -> StateGraph:
        """Build the LangGraph workflow"""
        from model_race.agents.data_agent import DataIngestionAgent
        from model_race.agents.race_agent import ModelRaceAgent
        from model_race.agents.artifact_agent import ArtifactAgent

        # Initialize agents
        data_agent = DataIngestionAgent(self.config)
        race_agent = ModelRaceAgent(self.config)
        artifact_agent = ArtifactAgent(self.config)

        # Create the graph
        workflow = StateGraph(RaceState)

        # Add nodes
        workflow.add_node("data_ingestion", data_agent.process)
        workflow.add_node("data_validation", data_agent.validate)
        workflow.add_node("preparation", race_agent.prepare)
        workflow.add_node("candidate_generation", race_agent.generate_candidates)
        workflow.add_node("resampling", race_agent.resample)
        workflow.add_node("race", race_agent.run_race)
        workflow.add_node("selection", race_agent.select_model)
        workflow.add_node("persistence", artifact_agent.persist)

        workflow.set_entry_point(PIPELINE_STEPS[0])

        # Sequential flow, any failing step ends the run
        for step, next_step in zip(PIPELINE_STEPS, PIPELINE_STEPS[1:]):
            workflow.add_conditional_edges(
                step,
                self._route_after_step,
                {
                    "proceed": next_step,
                    "error": END
                }
            )

        workflow.add_edge(PIPELINE_STEPS[-1], END)

        return workflow

    def _route_after_step(self, state: RaceState) -> str:
        """Route on the outcome of the step that just ran"""
        if state.get("next_action") == "error":
            return "error"
        return "proceed"

    async def run_pipeline(self,
                          data_path: str,
                          target_column: str,
                          project_name: Optional[str] = None,
                          metric: Optional[str] = None) -> dict:
        """Execute the complete race: ingest, validate, race, select and persist"""

        if project_name is None:
            project_name = f"race_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

        # Initial state
        initial_state = RaceState(
            data_path=data_path,
            target_column=target_column,
            project_name=project_name,
            metric=metric,
            status="running",
            current_step="initialization",
            next_action="data_ingestion",
            errors=[],
            execution_log=[f"Pipeline started at {datetime.now()}"]
        )

        logger.info(f"Starting pipeline for project: {project_name}")
        self._update_status(project_name, initial_state)

        try:
            final_state = dict(initial_state)
            async for state in self.compiled_graph.astream(initial_state, stream_mode="values"):
                final_state = state
                self._update_status(project_name, state)

            failed = bool(final_state.get("errors")) or final_state.get("next_action") != "completed"
            final_state["status"] = "failed" if failed else "completed"
            final_state["execution_log"].append(
                f"Pipeline {final_state['status']} at {datetime.now()}"
            )
            self._update_status(project_name, final_state)

            if failed:
                logger.error(f"Pipeline failed for {project_name}: {final_state.get('errors')}")
            else:
                logger.info(f"Pipeline completed successfully for {project_name}")
            return final_state

        except Exception as e:
            logger.error(f"Pipeline failed for {project_name}: {str(e)}")
            failed_state = {
                "status": "failed",
                "error": str(e),
                "project_name": project_name,
                "errors": [str(e)]
            }
            self._status[project_name] = {
                **self._status.get(project_name, {}),
                "status": "failed",
                "errors": [str(e)]
            }
            return failed_state

    def _update_status(self, project_name: str, state: dict):
        self._status[project_name] = {
            "status": state.get("status", "running"),
            "current_step": state.get("current_step"),
            "next_action": state.get("next_action"),
            "execution_log": list(state.get("execution_log", [])),
            "errors": list(state.get("errors", [])),
            "updated_at": datetime.now().isoformat()
        }

    def get_pipeline_status(self, project_name: str) -> dict:
        """Get current status of a pipeline run"""
        if project_name in self._status:
            return dict(self._status[project_name])

        # Finished by an earlier process
        report_path = Path(self.config.paths.MODELS_DIR) / project_name / "race_report.json"
        if report_path.exists():
            with open(report_path, 'r') as f:
                report = json.load(f)
            return {
                "status": "completed",
                "current_step": "persistence",
                "next_action": "completed",
                "execution_log": [],
                "errors": [],
                "updated_at": report.get("saved_at")
            }

        return {"status": "not_found"}

    def list_projects(self) -> list:
        """Projects raced by this pipeline or saved under the models directory"""
        projects = set(self._status)

        models_dir = Path(self.config.paths.MODELS_DIR)
        if models_dir.exists():
            projects.update(
                path.name for path in models_dir.iterdir()
                if (path / "race_report.json").exists()
            )

        return sorted(projects)

# Example usage
if __name__ == "__main__":
    import asyncio

    async def main():
        pipeline = ModelRacePipeline()

        result = await pipeline.run_pipeline(
            data_path="data/sample/wages.csv",
            target_column="wage",
            project_name="wage_prediction"
        )

        print("Pipeline status:", result.get("status"))
        print("Errors:", result.get("errors"))

    asyncio.run(main())
