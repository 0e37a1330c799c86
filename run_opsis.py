"""
CLI driver that glues everything together.

Typical session:
    $ python run_opsis.py config_example.json
    ├── Loads the CSV data and the target column
    ├── Runs screen / generate / refine loops over the operator stages
    └── Writes results:  opsis.out, models/, desc_dat/, plots/, final_model.json

Example config entry:
    "opt": ["binary", "unary"]    // two operator stages
"""

import pandas as pd
import json
import argparse
import shutil
from pathlib import Path
import sys

# This setup assumes the script is run from the project directory
# and the package is in `src/opsis`.
sys.path.insert(0, str(Path(__file__).parent / 'src'))

from opsis import OpsisRegressor
from opsis.exceptions import OpsisError


def run_analysis(config_path, overwrite=False):
    """Core logic to run OPSIS based on a config file."""
    # --- 1. Load Configuration ---
    print(f"--- Loading configuration from '{config_path}' ---")
    try:
        with open(config_path, 'r') as f:
            lines = [line for line in f if not line.strip().startswith('//')]
            config = json.loads("".join(lines))
    except (json.JSONDecodeError, FileNotFoundError) as e:
        print(f"Error reading or parsing config file '{config_path}': {e}")
        return None

    # --- 2. Prepare Directories ---
    workdir = Path(config.get('workdir', 'opsis_output'))
    if workdir.exists():
        if not overwrite and input(f"Workdir '{workdir}' already exists. Overwrite? (y/N): ").lower() != 'y':
            print("Aborting."); return None
        shutil.rmtree(workdir)
    workdir.mkdir(parents=True, exist_ok=True)
    config['workdir'] = str(workdir)

    # --- 3. Load Data ---
    data_file = config.pop('data_file', None)
    if not data_file or not Path(data_file).exists():
        raise FileNotFoundError(f"Data file '{data_file}' specified in config not found.")
    data_path = Path(data_file)
    if data_path.suffix != '.csv':
        raise ValueError(f"Unsupported data file format: '{data_path.suffix}'. Please use .csv.")
    print(f"--- Loading data from '{data_file}' ---")
    data = pd.read_csv(data_path)

    target = config.pop('target', config.pop('property_key', 'y'))
    if target not in data.columns:
        raise ValueError(f"Config 'target' '{target}' not found in data columns. Available columns: {data.columns.tolist()}")
    non_feature_cols = config.pop('non_feature_cols', [])
    feature_cols = [c for c in data.columns if c not in [target] + non_feature_cols]

    data_subset = data[[target] + feature_cols].dropna()
    if data_subset.empty:
        print("\nFATAL: DataFrame is empty after dropping rows with missing values.")
        return None
    y = data_subset[target].to_numpy(dtype=float)
    X = data_subset[feature_cols].reset_index(drop=True)

    print(f"\nTarget property: '{target}'")
    print(f"Primary features ({len(X.columns)}) being used for this run:\n  {', '.join(X.columns)}")

    # --- 4. Initialize and Run OPSIS ---
    print("\n--- Initializing and running OPSIS ---")
    model = OpsisRegressor(**config)
    try:
        model.fit(X, y)
    except (ImportError, OpsisError, ValueError, RuntimeError) as e:
        print(f"\nFATAL ERROR during OPSIS fit: {e}")
        return None

    # --- 5. Save a machine-readable summary ---
    res = model.result_
    summary = {
        'descriptors': res.descriptor_names,
        'constants': res.constants.tolist(),
        'coefficients': res.coefficients.tolist(),
        'gen_size': res.gen_size,
        'sel_size': res.sel_size,
        'in_sample_rmse': res.in_sample_rmse,
        'out_sample_rmse': res.out_sample_rmse,
        'exact_recovery': res.exact_recovery,
        'runtime': res.runtime,
        'latex': model.best_model_latex(target),
    }
    summary_path = workdir / "final_model.json"
    with open(summary_path, 'w') as f:
        json.dump(summary, f, indent=2)
    print(f"  Saved final model summary to '{summary_path}'")

    # --- 6. Print Final Standard Summary ---
    print("\n" + "="*25 + " FINAL MODEL REPORT " + "="*25)
    print(model.summary_report(X, y))
    print("\n" + "="*70)
    print(f"\nAnalysis complete. All results are saved in '{workdir}'.")
    return model


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description="Operator-induced symbolic search with inside-constant refinement (OPSIS)")
    parser.add_argument('config_file', help="Path to the JSON configuration file.")
    parser.add_argument('-y', '--overwrite', action='store_true', help="Overwrite an existing workdir without asking.")
    args = parser.parse_args()
    run_analysis(args.config_file, overwrite=args.overwrite)
