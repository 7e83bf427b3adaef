"""
Accuracy Validation of Dual-Tree Nadaraya-Watson Regression

This script checks the approximation guarantees against brute force on
synthetic data:

1. RELATIVE ERROR: |approx - exact| <= eps * exact for every query
2. EXACTNESS: eps = 0 reproduces brute force
3. SPEEDUP: pruning avoids most kernel evaluations on large inputs
4. PROBABILITY: Monte Carlo pruning meets eps with at least the requested
   probability
5. LEAVE-ONE-OUT: adjusted sums equal removing each point by hand
"""

import logging
import time
from dataclasses import dataclass

import numpy as np

from dualtree_regression import DualTreeNadarayaWatson


@dataclass
class ValidationResult:
    """Result of a validation test."""
    test_name: str
    passed: bool
    metric: float
    threshold: float
    details: str


def true_function(X: np.ndarray) -> np.ndarray:
    """Known positive test function: 2 + sin(x1) + cos(x2)."""
    return 2 + np.sin(X[:, 0] * 2) + np.cos(X[:, -1] * 2)


def generate_data(
    n: int,
    d: int = 2,
    noise_std: float = 0.1,
    seed: int = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Generate points on [0, 2 pi]^d with positive noisy targets."""
    rng = np.random.RandomState(seed)
    X = rng.uniform(0, 2 * np.pi, (n, d))
    y = true_function(X) + noise_std * rng.rand(n)
    return X, y


def max_relative_error(y_pred: np.ndarray, y_exact: np.ndarray) -> float:
    return float(np.max(np.abs(y_pred - y_exact) / np.abs(y_exact)))


# =============================================================================
# TEST 1: RELATIVE ERROR GUARANTEE
# =============================================================================

def test_relative_error() -> ValidationResult:
    """
    Verify the deterministic guarantee for several tolerances.

    Theory: with probability one, each sum is held to eps / (2 + eps) of its
    lower bound, which bounds the ratio by eps for non-negative targets.
    """
    print("\n" + "="*70)
    print("TEST 1: RELATIVE ERROR (max error within eps)")
    print("="*70)

    X, y = generate_data(5000, seed=42)
    queries, _ = generate_data(1000, seed=7)

    worst_ratio = 0.0
    for kernel in ["gaussian", "epanechnikov"]:
        for eps in [0.001, 0.01, 0.1]:
            model = DualTreeNadarayaWatson(
                bandwidth=0.4, kernel=kernel, relative_error=eps
            ).fit(X, y)
            error = max_relative_error(model.predict(queries), model.predict_naive(queries))
            worst_ratio = max(worst_ratio, error / eps)
            print(f"  {kernel:<13} eps={eps:<6}: max error = {error:.2e}")

    passed = worst_ratio <= 1.0
    print(f"\n  Worst error / eps: {worst_ratio:.3f}")
    print(f"  Result: {'PASS' if passed else 'FAIL'}")

    return ValidationResult(
        test_name="Relative error",
        passed=passed,
        metric=worst_ratio,
        threshold=1.0,
        details=f"worst error used {worst_ratio:.1%} of eps",
    )


# =============================================================================
# TEST 2: EXACTNESS
# =============================================================================

def test_exactness() -> ValidationResult:
    """eps = 0 with probability one must only prune exactly."""
    print("\n" + "="*70)
    print("TEST 2: EXACTNESS (eps = 0)")
    print("="*70)

    X, y = generate_data(3000, seed=1)
    model = DualTreeNadarayaWatson(bandwidth=0.3, relative_error=0.0).fit(X, y)
    error = max_relative_error(model.predict(X), model.predict_naive(X))
    passed = error < 1e-10

    print(f"  Max relative difference: {error:.2e}")
    print(f"  Result: {'PASS' if passed else 'FAIL'}")

    return ValidationResult(
        test_name="Exactness",
        passed=passed,
        metric=error,
        threshold=1e-10,
        details=f"max difference {error:.1e}",
    )


# =============================================================================
# TEST 3: SPEEDUP
# =============================================================================

def test_speedup() -> ValidationResult:
    """
    Compare kernel evaluations avoided and wall-clock time.

    Theory: with a wide bandwidth most node pairs are resolved by finite
    differences or series expansions near the top of the trees.
    """
    print("\n" + "="*70)
    print("TEST 3: SPEEDUP (dual-tree vs brute force)")
    print("="*70)

    X, y = generate_data(20000, seed=3)
    queries, _ = generate_data(20000, seed=4)
    model = DualTreeNadarayaWatson(bandwidth=1.0, relative_error=0.05).fit(X, y)

    start = time.perf_counter()
    model.predict(queries)
    dual_time = time.perf_counter() - start

    start = time.perf_counter()
    model.predict_naive(queries)
    naive_time = time.perf_counter() - start

    speedup = naive_time / dual_time
    for name, value in model.stats_.items():
        print(f"  {name:<30} {value}")
    print(f"\n  Dual-tree: {dual_time:.2f}s, brute force: {naive_time:.2f}s")
    print(f"  Speedup: {speedup:.1f}x")

    passed = speedup > 1.0
    print(f"  Result: {'PASS' if passed else 'FAIL'}")

    return ValidationResult(
        test_name="Speedup",
        passed=passed,
        metric=speedup,
        threshold=1.0,
        details=f"{speedup:.1f}x faster than brute force",
    )


# =============================================================================
# TEST 4: PROBABILISTIC GUARANTEE
# =============================================================================

def test_probability() -> ValidationResult:
    """
    Verify the fraction of queries meeting eps under Monte Carlo pruning.

    Theory: each query meets eps with probability at least p; the Hoeffding
    bounds used are conservative so the observed rate is usually higher.
    """
    print("\n" + "="*70)
    print("TEST 4: PROBABILITY (fraction of queries within eps)")
    print("="*70)

    X, y = generate_data(10000, d=1, seed=5)
    queries, _ = generate_data(500, d=1, seed=6)
    eps, probability = 0.05, 0.9

    rates = []
    for seed in range(10):
        model = DualTreeNadarayaWatson(
            bandwidth=2.0,
            relative_error=eps,
            probability=probability,
            expansion_order=None,
            random_state=seed,
        ).fit(X, y)
        y_pred = model.predict(queries)
        y_exact = model.predict_naive(queries)
        rates.append(np.mean(np.abs(y_pred - y_exact) <= eps * y_exact))
        print(f"  seed={seed}: within eps = {rates[-1]:.1%}, "
              f"sampled pairs = {model.stats_['num_monte_carlo_prunes']}")

    rate = float(np.mean(rates))
    passed = rate >= probability
    print(f"\n  Mean rate: {rate:.1%} (required {probability:.0%})")
    print(f"  Result: {'PASS' if passed else 'FAIL'}")

    return ValidationResult(
        test_name="Probability",
        passed=passed,
        metric=rate,
        threshold=probability,
        details=f"{rate:.1%} of queries within eps",
    )


# =============================================================================
# TEST 5: LEAVE-ONE-OUT
# =============================================================================

def test_leave_one_out() -> ValidationResult:
    """Leave-one-out sums must match removing each point by hand."""
    print("\n" + "="*70)
    print("TEST 5: LEAVE-ONE-OUT")
    print("="*70)

    X, y = generate_data(1500, seed=8)
    model = DualTreeNadarayaWatson(bandwidth=0.3, relative_error=0.0).fit(X, y)
    y_loo = model.loo_predict()

    y_manual = np.empty_like(y)
    held_out = DualTreeNadarayaWatson(bandwidth=0.3, relative_error=0.0)
    for i in range(len(X)):
        mask = np.arange(len(X)) != i
        y_manual[i] = held_out.fit(X[mask], y[mask]).predict_naive(X[i:i + 1])[0]

    error = max_relative_error(y_loo, y_manual)
    passed = error < 1e-8
    print(f"  Max relative difference: {error:.2e}")
    print(f"  Result: {'PASS' if passed else 'FAIL'}")

    return ValidationResult(
        test_name="Leave-one-out",
        passed=passed,
        metric=error,
        threshold=1e-8,
        details=f"max difference {error:.1e}",
    )


# =============================================================================
# MAIN VALIDATION SUITE
# =============================================================================

def run_full_validation():
    """Run all validation tests and produce summary report."""
    print("\n" + "="*70)
    print("DUAL-TREE REGRESSION ACCURACY VALIDATION SUITE")
    print("="*70)

    results = [
        test_relative_error(),
        test_exactness(),
        test_speedup(),
        test_probability(),
        test_leave_one_out(),
    ]

    print("\n" + "="*70)
    print("VALIDATION SUMMARY")
    print("="*70)

    n_passed = sum(r.passed for r in results)
    n_total = len(results)

    print(f"\n{'Test':<30} {'Result':<10} {'Details'}")
    print("-" * 70)

    for r in results:
        status = "PASS" if r.passed else "FAIL"
        print(f"{r.test_name:<30} {status:<10} {r.details}")

    print("-" * 70)
    print(f"\nOverall: {n_passed}/{n_total} tests passed")

    if n_passed != n_total:
        print(f"\nWARNING: {n_total - n_passed} test(s) failed - review needed")

    return results


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    results = run_full_validation()
