"""
Loading saved comparison scenarios.

A scenario is the JSON configuration exported by the comparison tool:
{"version": "2.0", "plans": [...], "familyData": {"members": [...], ...}}.
Version 1.0 files are migrated on import. Plans can also be maintained as a
spreadsheet, one plan per row, and read with read_plans_table.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Union

import pandas as pd

logger = logging.getLogger(__name__)

CURRENT_VERSION = '2.0'
SUPPORTED_VERSIONS = ('1.0', '2.0')


class ScenarioFormatError(ValueError):
    """The scenario document is not a configuration this tool can import."""


def migrate_v1_to_v2(v1_data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a version 1.0 export to the current layout."""
    family = v1_data.get('familyData') or {}
    return {
        'version': CURRENT_VERSION,
        'plans': v1_data.get('plans') or [],
        'familyData': {
            'members': family.get('members') or [],
            'serviceCosts': family.get('serviceCosts') or {},
        },
        'metadata': {
            'migratedFrom': 'v1.0',
            'migrationDate': datetime.now().isoformat(),
        },
    }


def import_configuration(data: Any) -> Dict[str, Any]:
    """
    Validate the structure of an exported configuration.

    Only the envelope is checked here; plan and family records are validated
    when the comparison runs.

    Args:
        data: Parsed JSON document

    Returns:
        Dict with 'plans', 'familyData' and 'metadata'

    Raises:
        ScenarioFormatError: on a missing or unsupported version, or missing
            plans or family data
    """
    if not isinstance(data, dict):
        raise ScenarioFormatError('Invalid import data format')
    version = data.get('version')
    if not version:
        raise ScenarioFormatError('Import data missing version information')
    if version not in SUPPORTED_VERSIONS:
        raise ScenarioFormatError(f"Unsupported data version: {version}")

    normalized = migrate_v1_to_v2(data) if version == '1.0' else data

    if not isinstance(normalized.get('plans'), list):
        raise ScenarioFormatError('Import data missing valid plans array')
    family = normalized.get('familyData')
    if not isinstance(family, dict) or 'members' not in family:
        raise ScenarioFormatError('Import data missing valid family data')

    return {
        'plans': normalized['plans'],
        'familyData': family,
        'metadata': normalized.get('metadata') or {},
    }


def load_scenario(path: Union[str, Path]) -> Dict[str, Any]:
    """Read and import a scenario JSON file."""
    with open(path, 'r', encoding='utf-8') as handle:
        try:
            data = json.load(handle)
        except json.JSONDecodeError as error:
            raise ScenarioFormatError(f"{path} is not valid JSON: {error}") from error

    scenario = import_configuration(data)
    logger.info(f"Loaded scenario {path}: {len(scenario['plans'])} plans, "
                f"{len(scenario['familyData']['members'])} members")
    return scenario


def read_plans_table(path: Union[str, Path]) -> List[Dict[str, Any]]:
    """
    Read plan records from a CSV or Excel sheet with one plan per row.

    Column headers are plan field names (id, name, monthlyPremium,
    individualDeductible, ...). Empty cells are left out of the record so the
    validator applies its defaults.

    Args:
        path: .csv, .xlsx or .xls file

    Returns:
        List of raw plan dicts
    """
    suffix = Path(path).suffix.lower()
    if suffix == '.csv':
        table = pd.read_csv(path)
    elif suffix in ('.xlsx', '.xls'):
        table = pd.read_excel(path)
    else:
        raise ScenarioFormatError(f"Unsupported plan table format: {suffix or path}")

    # Drop unnamed spreadsheet columns and fully empty rows
    table = table.loc[:, ~table.columns.astype(str).str.startswith('Unnamed')]
    table = table.dropna(how='all')

    plans = []
    for _, row in table.iterrows():
        record = {str(column): value for column, value in row.items() if pd.notna(value)}
        if 'id' in record:
            record['id'] = _clean_id(record['id'])
        plans.append(record)

    logger.info(f"Read {len(plans)} plans from {path}")
    return plans


def _clean_id(value: Any) -> str:
    # Spreadsheets hand numeric ids back as floats (101.0)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
