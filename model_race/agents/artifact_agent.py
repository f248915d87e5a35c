# model_race/agents/artifact_agent.py
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from model_race.config import Config, get_config
from model_race.tracking import RaceTracker

logger = logging.getLogger(__name__)

class ArtifactAgent:
    """Agent that writes the final model and the race record to disk and MLflow"""

    def __init__(self, config: Optional[Config] = None, tracker: Optional[RaceTracker] = None):
        self.config = config or get_config()
        self.tracker = tracker or RaceTracker(
            tracking_uri=self.config.mlflow.TRACKING_URI,
            experiment_name=self.config.mlflow.EXPERIMENT_NAME,
            enabled=self.config.mlflow.ENABLED
        )

    def project_dir(self, project_name: str) -> Path:
        return Path(self.config.paths.MODELS_DIR) / project_name

    async def persist(self, state: dict) -> dict:
        """Save the FinalModel bundle, leaderboard, trials and race report"""
        project_name = state['project_name']
        logger.info(f"Persisting race artifacts for {project_name}")

        try:
            project_dir = self.project_dir(project_name)
            project_dir.mkdir(parents=True, exist_ok=True)

            final_model = state['final_model']
            result = state['race_result']

            files = final_model.save(project_dir / 'artifacts')

            leaderboard_path = project_dir / 'leaderboard.csv'
            result.leaderboard_frame().to_csv(leaderboard_path, index=False)
            files['leaderboard_file'] = str(leaderboard_path)

            trials_path = project_dir / 'trials.csv'
            result.trials_frame().to_csv(trials_path, index=False)
            files['trials_file'] = str(trials_path)

            race_report = dict(state.get('race_report') or {})
            race_report['saved_at'] = datetime.now().isoformat()

            # Tracking problems never cost the saved model
            try:
                run_id = self.tracker.log_race(
                    project_name, result,
                    final_model=final_model,
                    test_metrics=state.get('test_metrics'),
                    race_config=self.config.get_race_config()
                )
            except Exception as e:
                logger.warning(f"MLflow logging failed: {str(e)}")
                state['execution_log'].append(f"MLflow logging failed: {str(e)}")
                run_id = None
            race_report['mlflow_run_id'] = run_id

            report_path = project_dir / 'race_report.json'
            with open(report_path, 'w') as f:
                json.dump(race_report, f, indent=2, default=str)
            files['report_file'] = str(report_path)

            state.update({
                'race_report': race_report,
                'artifacts': files,
                'current_step': 'persistence',
                'next_action': 'completed'
            })
            state['execution_log'].append(f"Artifacts saved to {project_dir}")
            return state

        except Exception as e:
            logger.error(f"Persisting artifacts failed: {str(e)}")
            state['errors'].append(f"Persistence error: {str(e)}")
            state['next_action'] = 'error'
            return state
