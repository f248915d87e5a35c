# model_race/config.py
import os
import json
import logging
from pathlib import Path
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, asdict

from model_race.racing.errors import InvalidConfiguration

logger = logging.getLogger(__name__)

@dataclass
class PathConfig:
    """Configuration for project paths"""
    PROJECT_ROOT: Path
    DATA_DIR: Path
    MODELS_DIR: Path
    LOGS_DIR: Path

@dataclass
class MLFlowConfig:
    """Configuration for MLflow tracking"""
    ENABLED: bool
    TRACKING_URI: str
    EXPERIMENT_NAME: str

@dataclass
class ResamplingConfig:
    """Configuration for the held-out test split and the race partitions"""
    METHOD: str  # 'kfold', 'bootstrap'
    N_PARTITIONS: int
    STRATIFY: bool
    STRATA_BINS: int
    TEST_SIZE: float
    RANDOM_STATE: int

@dataclass
class CandidateConfig:
    """Configuration for candidate generation"""
    SEARCH_METHOD: str  # 'grid', 'random', 'latin_hypercube'
    GRID_SIZE: Optional[int]
    LEVELS: int
    ALGORITHMS: Optional[List[str]]  # None means every algorithm in the default grids
    PARAM_GRIDS: Dict[str, Any]

@dataclass
class RaceConfig:
    """Configuration for the race itself"""
    METRIC: Optional[str]  # None picks rmse / roc_auc by task
    MIN_ROUNDS: int
    ALPHA: float
    TEST: str  # 'anova', 'paired_t'
    N_JOBS: int
    BACKEND: str

@dataclass
class DataValidationConfig:
    """Configuration for data validation"""
    MAX_FILE_SIZE_MB: int
    MIN_ROWS: int
    MAX_MISSING_PERCENTAGE: float
    MAX_TARGET_MISSING_PERCENTAGE: float
    MAX_DUPLICATE_PERCENTAGE: float
    SUPPORTED_FILE_FORMATS: List[str]

@dataclass
class APIConfig:
    """Configuration for the REST API"""
    HOST: str
    PORT: int
    ENABLE_CORS: bool

class Config:
    """Central configuration manager for the model race"""

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize configuration

        Args:
            config_file: Optional path to JSON config file to override defaults
        """
        self._load_default_config()

        if config_file:
            self._load_config_file(config_file)

        self._load_environment_variables()

    def _load_default_config(self):
        """Load default configuration values"""

        # Project paths
        project_root = Path(__file__).parent.parent
        self.paths = PathConfig(
            PROJECT_ROOT=project_root,
            DATA_DIR=project_root / "data",
            MODELS_DIR=project_root / "models",
            LOGS_DIR=project_root / "logs"
        )

        # MLflow configuration
        self.mlflow = MLFlowConfig(
            ENABLED=False,
            TRACKING_URI="sqlite:///mlflow.db",
            EXPERIMENT_NAME="model_race"
        )

        # Resampling configuration
        self.resampling = ResamplingConfig(
            METHOD="kfold",
            N_PARTITIONS=10,
            STRATIFY=True,
            STRATA_BINS=4,
            TEST_SIZE=0.2,
            RANDOM_STATE=42
        )

        # Candidate generation configuration
        self.candidates = CandidateConfig(
            SEARCH_METHOD="grid",
            GRID_SIZE=None,
            LEVELS=3,
            ALGORITHMS=None,
            PARAM_GRIDS={}
        )

        # Race configuration
        self.race = RaceConfig(
            METRIC=None,
            MIN_ROUNDS=3,
            ALPHA=0.05,
            TEST="anova",
            N_JOBS=1,
            BACKEND="loky"
        )

        # Data validation configuration
        self.data_validation = DataValidationConfig(
            MAX_FILE_SIZE_MB=500,
            MIN_ROWS=30,
            MAX_MISSING_PERCENTAGE=50.0,
            MAX_TARGET_MISSING_PERCENTAGE=50.0,
            MAX_DUPLICATE_PERCENTAGE=10.0,
            SUPPORTED_FILE_FORMATS=['.csv', '.xlsx', '.json', '.parquet']
        )

        # API configuration
        self.api = APIConfig(
            HOST="0.0.0.0",
            PORT=8000,
            ENABLE_CORS=True
        )

        # Additional settings
        self.logging_level = "INFO"

    def _load_config_file(self, config_file: str):
        """Load configuration from JSON file"""
        if not os.path.exists(config_file):
            raise InvalidConfiguration(f"Config file not found: {config_file}")

        try:
            with open(config_file, 'r') as f:
                config_data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise InvalidConfiguration(f"Could not load config file {config_file}: {e}") from e

        # Update configurations with values from file
        for section, values in config_data.items():
            if not hasattr(self, section):
                logger.warning(f"Ignoring unknown config section '{section}'")
                continue

            config_obj = getattr(self, section)
            if not isinstance(values, dict):
                setattr(self, section, values)
                continue

            for key, value in values.items():
                if hasattr(config_obj, key):
                    if isinstance(getattr(config_obj, key), Path):
                        value = Path(value)
                    setattr(config_obj, key, value)
                else:
                    logger.warning(f"Ignoring unknown config key '{section}.{key}'")

    def _load_environment_variables(self):
        """Load configuration from environment variables"""

        # MLflow settings
        if os.getenv("MLFLOW_ENABLED"):
            self.mlflow.ENABLED = os.getenv("MLFLOW_ENABLED").lower() == 'true'

        if os.getenv("MLFLOW_TRACKING_URI"):
            self.mlflow.TRACKING_URI = os.getenv("MLFLOW_TRACKING_URI")

        if os.getenv("MLFLOW_EXPERIMENT_NAME"):
            self.mlflow.EXPERIMENT_NAME = os.getenv("MLFLOW_EXPERIMENT_NAME")

        # Resampling settings
        if os.getenv("N_PARTITIONS"):
            self.resampling.N_PARTITIONS = int(os.getenv("N_PARTITIONS"))

        if os.getenv("RESAMPLING_METHOD"):
            self.resampling.METHOD = os.getenv("RESAMPLING_METHOD")

        if os.getenv("RANDOM_STATE"):
            self.resampling.RANDOM_STATE = int(os.getenv("RANDOM_STATE"))

        # Race settings
        if os.getenv("RACE_METRIC"):
            self.race.METRIC = os.getenv("RACE_METRIC")

        if os.getenv("RACE_MIN_ROUNDS"):
            self.race.MIN_ROUNDS = int(os.getenv("RACE_MIN_ROUNDS"))

        if os.getenv("RACE_ALPHA"):
            self.race.ALPHA = float(os.getenv("RACE_ALPHA"))

        if os.getenv("RACE_TEST"):
            self.race.TEST = os.getenv("RACE_TEST")

        if os.getenv("RACE_N_JOBS"):
            self.race.N_JOBS = int(os.getenv("RACE_N_JOBS"))

        # Paths
        if os.getenv("MODELS_DIR"):
            self.paths.MODELS_DIR = Path(os.getenv("MODELS_DIR"))

        # API settings
        if os.getenv("API_PORT"):
            self.api.PORT = int(os.getenv("API_PORT"))

        if os.getenv("API_HOST"):
            self.api.HOST = os.getenv("API_HOST")

        # General settings
        if os.getenv("LOG_LEVEL"):
            self.logging_level = os.getenv("LOG_LEVEL")

    def create_directories(self):
        """Create necessary directories if they don't exist"""
        directories = [
            self.paths.DATA_DIR,
            self.paths.MODELS_DIR,
            self.paths.LOGS_DIR
        ]

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)

    def get_race_config(self) -> Dict[str, Any]:
        """Flat view of the settings a race run needs"""
        return {
            'resampling_method': self.resampling.METHOD,
            'n_partitions': self.resampling.N_PARTITIONS,
            'stratify': self.resampling.STRATIFY,
            'test_size': self.resampling.TEST_SIZE,
            'random_state': self.resampling.RANDOM_STATE,
            'search_method': self.candidates.SEARCH_METHOD,
            'grid_size': self.candidates.GRID_SIZE,
            'levels': self.candidates.LEVELS,
            'metric': self.race.METRIC,
            'min_rounds': self.race.MIN_ROUNDS,
            'alpha': self.race.ALPHA,
            'elimination_test': self.race.TEST,
            'n_jobs': self.race.N_JOBS
        }

    def save_config(self, config_file: str):
        """Save current configuration to JSON file"""
        config_dict = {}

        for section in ('paths', 'mlflow', 'resampling', 'candidates', 'race', 'data_validation', 'api'):
            config_dict[section] = {
                key: str(value) if isinstance(value, Path) else value
                for key, value in asdict(getattr(self, section)).items()
            }
        config_dict['logging_level'] = self.logging_level

        with open(config_file, 'w') as f:
            json.dump(config_dict, f, indent=2)

    def validate_config(self) -> List[str]:
        """Validate configuration and return list of issues"""
        issues = []

        if self.resampling.METHOD not in ('kfold', 'bootstrap'):
            issues.append(f"Invalid resampling method: {self.resampling.METHOD}")

        if self.resampling.N_PARTITIONS < 2:
            issues.append(f"Partitions must be >= 2: {self.resampling.N_PARTITIONS}")

        if self.resampling.TEST_SIZE <= 0 or self.resampling.TEST_SIZE >= 1:
            issues.append(f"Invalid test size: {self.resampling.TEST_SIZE}")

        if self.candidates.SEARCH_METHOD not in ('grid', 'random', 'latin_hypercube'):
            issues.append(f"Invalid search method: {self.candidates.SEARCH_METHOD}")

        if self.race.MIN_ROUNDS < 1:
            issues.append(f"Minimum rounds must be >= 1: {self.race.MIN_ROUNDS}")

        if self.race.ALPHA <= 0 or self.race.ALPHA >= 1:
            issues.append(f"Invalid significance level: {self.race.ALPHA}")

        if self.race.TEST not in ('anova', 'paired_t'):
            issues.append(f"Invalid elimination test: {self.race.TEST}")

        if self.data_validation.MIN_ROWS <= 0:
            issues.append(f"Invalid min rows: {self.data_validation.MIN_ROWS}")

        return issues

    def __str__(self) -> str:
        """String representation of configuration"""
        return f"Config(project_root={self.paths.PROJECT_ROOT}, models_dir={self.paths.MODELS_DIR})"

# Global configuration instance
_config = None

def get_config(config_file: Optional[str] = None) -> Config:
    """Get global configuration instance (singleton pattern)"""
    global _config
    if _config is None:
        _config = Config(config_file)
    return _config

def reload_config(config_file: Optional[str] = None) -> Config:
    """Reload configuration (useful for testing)"""
    global _config
    _config = Config(config_file)
    return _config

# Example configuration file template
CONFIG_TEMPLATE = {
    "resampling": {
        "METHOD": "bootstrap",
        "N_PARTITIONS": 25,
        "STRATIFY": True
    },
    "candidates": {
        "SEARCH_METHOD": "latin_hypercube",
        "GRID_SIZE": 20,
        "PARAM_GRIDS": {
            "xgboost": {
                "param_grid": {
                    "n_estimators": {"distribution": "int_uniform", "min": 50, "max": 500},
                    "learning_rate": {"distribution": "log_uniform", "min": 0.01, "max": 0.3},
                    "max_depth": [3, 6, 9]
                }
            }
        }
    },
    "race": {
        "METRIC": "rmse",
        "MIN_ROUNDS": 3,
        "ALPHA": 0.05,
        "N_JOBS": -1
    },
    "mlflow": {
        "ENABLED": True,
        "TRACKING_URI": "sqlite:///mlflow.db",
        "EXPERIMENT_NAME": "wage_prediction"
    }
}

def create_config_template(output_file: str):
    """Create a configuration template file"""
    with open(output_file, 'w') as f:
        json.dump(CONFIG_TEMPLATE, f, indent=2)
    logger.info(f"Configuration template created: {output_file}")
