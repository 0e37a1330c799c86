"""
Reporting helpers: symbolic formula printing, result files and plots.

Example:
    print(print_descriptor_formula(model.descriptors_, model.coef_))
    plot_parity(model, X, y, save_path="parity.png")
"""
import numpy as np
import pandas as pd
import sympy
import warnings
from pathlib import Path

import matplotlib.pyplot as plt

from .descriptors import to_sympy, to_string


#  Plotting
def plot_generation_sizes(result, ax=None, save_path=None):
    """Plots the number of descriptors generated and kept at every iteration."""
    if result is None or not result.gen_size: return None
    if ax is None: fig, ax = plt.subplots(figsize=(7, 5)); own_fig = True
    else: fig = ax.figure; own_fig = False

    steps = list(range(len(result.gen_size)))
    ax.plot(steps, result.gen_size, '-o', label='Generated')
    sel = [(i + 1, s) for i, s in enumerate(result.sel_size) if s is not None]
    if sel:
        ax.plot([s[0] for s in sel], [s[1] for s in sel], '-s', label='Selected')
    ax.set_yscale('log')
    ax.set_xlabel("Iteration")
    ax.set_ylabel("Number of descriptors")
    ax.set_title("Descriptor Space Size vs. Iteration")
    ax.set_xticks(steps)
    ax.grid(True, linestyle='--', alpha=0.6); ax.legend()

    if own_fig: plt.tight_layout()
    if save_path: plt.savefig(save_path); plt.close(fig)
    return fig

def plot_parity(estimator, X, y, ax=None, save_path=None):
    """Generates a parity plot (predicted vs. actual)."""
    from sklearn.metrics import r2_score, mean_squared_error

    if estimator.result_ is None:
        return None
    if ax is None: fig, ax = plt.subplots(figsize=(6, 6)); own_fig = True
    else: fig = ax.figure; own_fig = False

    y_true = np.asarray(y, dtype=float).ravel()
    y_pred = estimator.predict(X)
    r2 = r2_score(y_true, y_pred)
    rmse = np.sqrt(mean_squared_error(y_true, y_pred))

    ax.scatter(y_true, y_pred, alpha=0.5, label=f'R²={r2:.3f}, RMSE={rmse:.3g}')
    min_val, max_val = min(np.min(y_true), np.min(y_pred)), max(np.max(y_true), np.max(y_pred))
    ax.plot([min_val, max_val], [min_val, max_val], 'r--', label="y=x")
    ax.set_xlabel("Actual Value"); ax.set_ylabel("Predicted Value")
    ax.set_title(f"Parity Plot K={len(estimator.descriptors_)}")
    ax.set_aspect('equal', adjustable='box'); ax.legend(); ax.grid(True)

    if own_fig: plt.tight_layout()
    if save_path: plt.savefig(save_path); plt.close(fig)
    return fig


def save_results(estimator, X, y):
    """Saves all model results, data, and plots to the specified work directory."""
    workdir = estimator.workdir
    print(f"\nSaving results to '{workdir}'...")
    p_workdir = Path(workdir)
    p_models = p_workdir / "models"
    p_desc_dat = p_workdir / "desc_dat"
    p_plots = p_workdir / "plots"
    for p in [p_models, p_desc_dat, p_plots]:
        p.mkdir(exist_ok=True, parents=True)
    result = estimator.result_

    print("  - Generating and saving plots...")
    try:
        plot_generation_sizes(result, save_path=p_plots / "generation_sizes.png")
        plot_parity(estimator, X, y, save_path=p_plots / "parity.png")
    except (ValueError, RuntimeError, OSError) as e:
        warnings.warn(f"Error during plotting: {e}")

    # One file per L0 model order; the exact-recovery path has a single model
    models = result.lzero_models or {
        len(result.descriptors): {'names': result.descriptor_names,
                                  'coef': result.coefficients,
                                  'rmse': result.in_sample_rmse, 'aic': None}}
    best_k = result.lzero_best_k if result.lzero_best_k is not None else len(result.descriptors)
    names_to_nodes = {to_string(d): d for d in estimator.state_.descriptors} if estimator.state_ else {}
    names_to_nodes.update({n: d for n, d in zip(result.descriptor_names, result.descriptors)})

    for k, model_data in models.items():
        with (p_models / f"model_K{k:02d}.dat").open("w") as f:
            f.write(f"# MODEL SIZE: {k}\n")
            f.write(f"# IN_SAMPLE_RMSE: {model_data['rmse']:.6g}\n")
            if model_data.get('aic') is not None:
                f.write(f"# AIC: {model_data['aic']:.6g}\n")
            f.write(f"# IS_BEST: {'YES' if k == best_k else 'NO'}\n\n")
            np.savetxt(f, np.atleast_1d(model_data['coef']), fmt="%.10g",
                       header="Intercept, Coefs...", comments="# ")
            f.write("\n# DESCRIPTORS:\n# " + "\n# ".join(
                f"D{i+1}: {name}" for i, name in enumerate(model_data['names'])))
            nodes = [names_to_nodes[n] for n in model_data['names'] if n in names_to_nodes]
            if len(nodes) == len(model_data['names']):
                s_expr = print_descriptor_formula(nodes, np.asarray(model_data['coef']), s_expr_format=True)
                f.write(f"\n\n# S-EXPRESSION\n{s_expr}\n")

    X_desc = pd.DataFrame(result.X_selected, columns=result.descriptor_names)
    X_desc.insert(0, 'y', np.asarray(y, dtype=float).ravel())
    X_desc.to_csv(p_desc_dat / "selected.dat", sep=' ', index=False, header=True, float_format="%.8g")

    with (p_workdir / "opsis.out").open("w") as f:
        f.write(estimator.summary_report(X, y))

    print("  - Results saved.")


def sympy_to_s_expression(expr):
    """Converts a SymPy expression to a Lisp-style S-expression string."""
    if isinstance(expr, (sympy.Symbol, sympy.Number)):
        return str(expr)
    if expr is None: return "None"

    func_name = expr.func.__name__
    op_map = {'Add': '+', 'Mul': '*', 'Pow': '**', 'Abs': 'abs'}
    s_op = op_map.get(func_name, func_name.lower())

    args = [sympy_to_s_expression(arg) for arg in expr.args]

    if func_name == 'Pow' and str(expr.args[1]) == '-1': return f"(/ 1 {args[0]})"
    if func_name == 'Mul' and len(args) == 2 and str(args[0]) == '-1': return f"(- {args[1]})"

    return f"({s_op} {' '.join(args)})"


def print_descriptor_formula(descriptors, coefficients, target_name='y', s_expr_format=False,
                             latex_format=False, pretty_format=False):
    """
    Formats the symbolic formula of a linear model over descriptors.

    `coefficients` holds the intercept first. With `coefficients=None` only
    the descriptors are listed.
    """
    features = [to_sympy(d) for d in descriptors]

    if pretty_format:
        formatter = lambda expr: sympy.pretty(expr, use_unicode=False, full_prec=False).replace('\n', '')
    elif latex_format:
        formatter = sympy.latex
    elif s_expr_format:
        if coefficients is None:
            return "\n".join(sympy_to_s_expression(feat) for feat in features)
        coefs = np.asarray(coefficients, dtype=float).ravel()
        formula = sympy.Number(float(coefs[0]))
        formula += sum(sympy.Number(float(coefs[i + 1])) * f for i, f in enumerate(features))
        return sympy_to_s_expression(formula)
    else:
        formatter = lambda expr: sympy.sstr(expr)

    header = "=" * 60
    output = [] if (latex_format or pretty_format) else [f"{header}\nFinal Symbolic Model\n{header}"]

    if coefficients is None:
        output.append("Model descriptors:\n" + "\n".join(f"D{i+1} = {formatter(f)}" for i, f in enumerate(features)))
        return "\n".join(output)

    coefs = np.asarray(coefficients, dtype=float).ravel()
    full_model_expr = sympy.Number(float(coefs[0]))
    for i, feature in enumerate(features):
        full_model_expr += sympy.Number(float(coefs[i + 1])) * feature

    # Round the coefficients for cleaner output
    if pretty_format or latex_format:
        full_model_expr = full_model_expr.xreplace({n: round(n, 4) for n in full_model_expr.atoms(sympy.Float)})

    formula_str = formatter(full_model_expr)
    if latex_format:
        output.append(f"${formatter(sympy.Symbol(target_name))} = {formula_str}$")
    else:
        output.append(f"{target_name} = {formula_str}")
    return "\n".join(output)
