import asyncio
import argparse
import sys
from pathlib import Path
from model_race.pipeline import ModelRacePipeline
from model_race.utils.logging_config import initialize_default_logging
from model_race.config import get_config

def main():
    """Main entry point for the model race"""
    parser = argparse.ArgumentParser(description="Race candidate models across resamples")
    parser.add_argument("--data-path", required=True, help="Path to the dataset")
    parser.add_argument("--target-column", required=True, help="Name of the target column")
    parser.add_argument("--project-name", help="Name of the race project")
    parser.add_argument("--config", help="Path to configuration file")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument("--metric", help="Metric to race on (default: rmse or roc_auc by task)")

    args = parser.parse_args()

    # Load configuration
    config = get_config(args.config)

    # Setup logging
    initialize_default_logging(log_level=args.log_level, log_dir=str(config.paths.LOGS_DIR))

    config.create_directories()

    issues = config.validate_config()
    if issues:
        for issue in issues:
            print(f"Configuration error: {issue}")
        sys.exit(1)

    # Validate data path exists
    if not Path(args.data_path).exists():
        print(f"Error: Data file not found at {args.data_path}")
        sys.exit(1)

    async def run_race():
        """Run the model race"""
        pipeline = ModelRacePipeline(config)

        result = await pipeline.run_pipeline(
            data_path=args.data_path,
            target_column=args.target_column,
            project_name=args.project_name,
            metric=args.metric
        )

        if result.get('status') != 'completed':
            print("Race failed:")
            for error in result.get('errors', []):
                print(f"  - {error}")
            sys.exit(1)

        report = result.get('race_report', {})
        winner = report.get('winner', {})
        summary = report.get('summary', {})
        print("Race completed successfully!")
        print(f"Project: {result.get('project_name')}")
        print(f"Candidates: {summary.get('candidates')} "
              f"(eliminated {summary.get('eliminated')}, failed {summary.get('failed')})")
        print(f"Winner: {winner.get('name')} (mean {report.get('metric')} on resamples: {winner.get('resample_mean')})")
        for name, value in result.get('test_metrics', {}).items():
            print(f"  test {name}: {value:.4f}")
        print(f"Artifacts: {result.get('artifacts', {}).get('model_file')}")

    asyncio.run(run_race())

if __name__ == "__main__":
    main()
