# model_race/agents/data_agent.py
import re
import pandas as pd
import numpy as np
from typing import Dict, List, Optional
import logging
from pathlib import Path

from model_race.config import Config, get_config

logger = logging.getLogger(__name__)

def normalize_column_name(name) -> str:
    """Canonical snake_case field name: 'Job Level (1-5)' -> 'job_level_1_5'"""
    text = str(name).strip()
    # Split camelCase before lowering
    text = re.sub(r'([a-z0-9])([A-Z])', r'\1_\2', text)
    text = re.sub(r'[^0-9a-zA-Z]+', '_', text).strip('_').lower()
    if not text:
        text = 'column'
    if text[0].isdigit():
        text = f"x{text}"
    return text

def normalize_columns(columns: List) -> List[str]:
    """Normalise every name, suffixing duplicates with _2, _3, ..."""
    seen: Dict[str, int] = {}
    normalized = []
    for column in columns:
        name = normalize_column_name(column)
        if name in seen:
            seen[name] += 1
            name = f"{name}_{seen[name]}"
        else:
            seen[name] = 1
        normalized.append(name)
    return normalized

class DataIngestionAgent:
    """Agent responsible for data ingestion and initial validation"""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.supported_formats = self.config.data_validation.SUPPORTED_FILE_FORMATS
        self.max_file_size_mb = self.config.data_validation.MAX_FILE_SIZE_MB

    async def process(self, state: dict) -> dict:
        """Main processing function for data ingestion"""
        logger.info(f"Starting data ingestion for: {state['data_path']}")

        try:
            # Load data
            data = await self._load_data(state['data_path'])

            original_columns = list(data.columns)
            data.columns = normalize_columns(original_columns)
            target_column = normalize_column_name(state['target_column'])

            # Basic info extraction
            data_info = self._extract_data_info(data)
            data_info['original_columns'] = dict(zip(data.columns, original_columns))

            state.update({
                'raw_data': data,
                'target_column': target_column,
                'data_info': data_info,
                'current_step': 'data_ingestion',
                'next_action': 'data_validation'
            })

            state['execution_log'].append(
                f"Data loaded successfully: {data.shape[0]} rows, {data.shape[1]} columns"
            )

            return state

        except Exception as e:
            logger.error(f"Data ingestion failed: {str(e)}")
            state['errors'].append(f"Data ingestion error: {str(e)}")
            state['next_action'] = 'error'
            return state

    async def _load_data(self, data_path: str) -> pd.DataFrame:
        """Load data from various file formats"""
        path = Path(data_path)

        # Validate file exists
        if not path.exists():
            raise FileNotFoundError(f"Data file not found: {data_path}")

        # Check file size
        file_size_mb = path.stat().st_size / (1024 * 1024)
        if file_size_mb > self.max_file_size_mb:
            raise ValueError(f"File too large: {file_size_mb:.1f}MB > {self.max_file_size_mb}MB")

        extension = path.suffix.lower()
        if extension not in self.supported_formats:
            raise ValueError(f"Unsupported file format: {extension}")

        if extension == '.csv':
            # Try different encodings and separators
            for encoding in ['utf-8', 'latin-1', 'cp1252']:
                for sep in [',', ';', '\t']:
                    try:
                        data = pd.read_csv(data_path, encoding=encoding, sep=sep)
                    except (UnicodeDecodeError, pd.errors.ParserError):
                        continue
                    if data.shape[1] > 1:  # Successfully parsed multiple columns
                        return data
            raise ValueError("Could not parse CSV file with any encoding/separator combination")

        elif extension == '.xlsx':
            return pd.read_excel(data_path)

        elif extension == '.json':
            return pd.read_json(data_path)

        elif extension == '.parquet':
            return pd.read_parquet(data_path)

        raise ValueError(f"Unsupported file format: {extension}")

    def _extract_data_info(self, data: pd.DataFrame) -> dict:
        """Extract information about the dataset"""
        return {
            'shape': data.shape,
            'columns': list(data.columns),
            'dtypes': {col: str(dtype) for col, dtype in data.dtypes.items()},
            'missing_values': data.isnull().sum().to_dict(),
            'numeric_columns': list(data.select_dtypes(include=[np.number]).columns),
            'categorical_columns': list(data.select_dtypes(include=['object', 'category']).columns),
            'datetime_columns': list(data.select_dtypes(include=['datetime64']).columns),
            'duplicate_rows': int(data.duplicated().sum())
        }

    async def validate(self, state: dict) -> dict:
        """Check the loaded data can support a race"""
        logger.info("Starting data validation")

        try:
            data = state['raw_data']
            target_column = state['target_column']
            settings = self.config.data_validation
            n_partitions = self.config.resampling.N_PARTITIONS

            # Critical checks decide whether the race can run at all
            validation_results = []

            # 1. Target column exists
            target_exists = target_column in data.columns
            validation_results.append({
                'check': 'target_column_exists',
                'critical': True,
                'passed': target_exists,
                'message': f"Target column '{target_column}' {'found' if target_exists else 'not found'}"
            })

            # 2. Enough rows for the held-out split and the partitions
            min_rows = max(settings.MIN_ROWS, n_partitions)
            validation_results.append({
                'check': 'minimum_rows',
                'critical': True,
                'passed': len(data) >= min_rows,
                'message': f"Dataset has {len(data)} rows (minimum: {min_rows})"
            })

            # 3. Target variable usable
            if target_exists:
                validation_results.append(self._validate_target_variable(data[target_column]))

            # 4. Columns with excessive missing values
            high_missing_cols = [
                col for col in data.columns
                if data[col].isnull().mean() * 100 > settings.MAX_MISSING_PERCENTAGE
            ]
            validation_results.append({
                'check': 'missing_values',
                'critical': False,
                'passed': len(high_missing_cols) == 0,
                'message': f"Columns with >{settings.MAX_MISSING_PERCENTAGE:.0f}% missing: {high_missing_cols}"
                if high_missing_cols else "Missing values within acceptable range"
            })

            # 5. Numeric data stored as text
            dtype_issues = self._check_data_types(data)
            validation_results.append({
                'check': 'data_types',
                'critical': False,
                'passed': len(dtype_issues) == 0,
                'message': f"Data type issues: {dtype_issues}" if dtype_issues else "Data types are consistent"
            })

            # 6. Duplicate rows
            duplicate_pct = data.duplicated().mean() * 100 if len(data) else 0.0
            validation_results.append({
                'check': 'duplicates',
                'critical': False,
                'passed': duplicate_pct < settings.MAX_DUPLICATE_PERCENTAGE,
                'message': f"Duplicate rows: {duplicate_pct:.1f}%"
            })

            passed_checks = sum(1 for result in validation_results if result['passed'])
            is_valid = all(result['passed'] for result in validation_results if result['critical'])

            validation_report = {
                'is_valid': is_valid,
                'passed_checks': passed_checks,
                'total_checks': len(validation_results),
                'results': validation_results,
                'recommendations': self._generate_recommendations(validation_results)
            }

            state.update({
                'validation_report': validation_report,
                'current_step': 'data_validation',
                'next_action': 'preparation' if is_valid else 'error'
            })

            if not is_valid:
                failed = [r['message'] for r in validation_results if r['critical'] and not r['passed']]
                state['errors'].append(f"Data validation failed: {'; '.join(failed)}")

            state['execution_log'].append(
                f"Data validation completed: {passed_checks}/{len(validation_results)} checks passed"
            )

            return state

        except Exception as e:
            logger.error(f"Data validation failed: {str(e)}")
            state['errors'].append(f"Data validation error: {str(e)}")
            state['next_action'] = 'error'
            return state

    def _validate_target_variable(self, target_series: pd.Series) -> dict:
        """Validate the target variable"""
        missing_pct = target_series.isnull().mean() * 100
        target_info = {
            'name': target_series.name,
            'dtype': str(target_series.dtype),
            'unique_values': int(target_series.nunique()),
            'missing_count': int(target_series.isnull().sum()),
            'missing_pct': float(missing_pct)
        }

        if target_series.nunique() < 2:
            return {
                'check': 'target_variable',
                'critical': True,
                'passed': False,
                'message': "Target has fewer than two distinct values",
                'details': target_info
            }

        return {
            'check': 'target_variable',
            'critical': True,
            'passed': missing_pct <= self.config.data_validation.MAX_TARGET_MISSING_PERCENTAGE,
            'message': f"Target: {target_info['unique_values']} distinct values, {missing_pct:.1f}% missing",
            'details': target_info
        }

    def _check_data_types(self, data: pd.DataFrame) -> List[str]:
        """Check for data type inconsistencies"""
        issues = []

        for col in data.columns:
            if data[col].dtype == 'object':
                # Check if numeric data is stored as string
                non_null_values = data[col].dropna()
                if len(non_null_values) > 0:
                    converted = pd.to_numeric(non_null_values.iloc[:min(100, len(non_null_values))],
                                              errors='coerce')
                    if converted.notnull().all():
                        issues.append(f"Column '{col}' appears numeric but stored as text")

        return issues

    def _generate_recommendations(self, validation_results: List[dict]) -> List[str]:
        """Generate recommendations based on validation results"""
        recommendations = []

        for result in validation_results:
            if not result['passed']:
                check_type = result['check']

                if check_type == 'target_column_exists':
                    recommendations.append("Verify target column name or provide correct column name")
                elif check_type == 'minimum_rows':
                    recommendations.append("Collect more data or request fewer partitions")
                elif check_type == 'target_variable':
                    recommendations.append("Drop or impute rows with a missing target before racing")
                elif check_type == 'missing_values':
                    recommendations.append("Consider dropping high-missing columns; they are imputed during the race")
                elif check_type == 'data_types':
                    recommendations.append("Convert numeric text columns before racing")
                elif check_type == 'duplicates':
                    recommendations.append("Remove duplicate rows so they do not leak across partitions")

        return recommendations
