"""
Dual-tree Nadaraya-Watson regression.

Recurses jointly over a query tree and a reference tree. A node pair whose
contribution is bounded tightly enough (finite differences, a Hermite
far-field expansion, or with a probability guarantee below one a Monte
Carlo sample) is pruned and its contribution postponed at the query node;
otherwise the pair is split, down to exhaustive evaluation of leaf pairs.
"""

import copy
import logging

import numpy as np
from numpy.typing import NDArray
from sklearn.preprocessing import MinMaxScaler, StandardScaler
from sklearn.utils import check_random_state

from dualtree_regression.kernels import GaussianKernel, get_kernel, pairwise_sq_distances
from dualtree_regression.results import NWRCdeQueryResult
from dualtree_regression.series import HermiteSeries
from dualtree_regression.stats import (
    NWRCdeConfig,
    NWRCdeDelta,
    NWRCdeGlobal,
    NWRCdeQueryStat,
    ReferenceStat,
    abs_lower_bound,
)
from dualtree_regression.tree import BallNode, build_ball_tree, iter_nodes, min_sq_distance

logger = logging.getLogger(__name__)

SCALERS = {
    "range": MinMaxScaler,
    "standardize": StandardScaler,
}


class TraversalDepthError(RuntimeError):
    """The tree recursion exceeded the interpreter's stack limit."""


def naive_sums(
    queries: NDArray[np.floating],
    references: NDArray[np.floating],
    targets: NDArray[np.floating],
    kernel,
    chunk_size: int = 512,
) -> tuple[NDArray[np.floating], NDArray[np.floating]]:
    """
    Exact numerator and denominator sums by brute force.

    Parameters
    ----------
    queries : ndarray of shape (n_queries, n_features)
        Query points
    references : ndarray of shape (n_references, n_features)
        Reference points
    targets : ndarray of shape (n_references,) or (n_references, n_outputs)
        Reference targets
    kernel : RadialKernel
        Kernel strategy
    chunk_size : int, default=512
        Number of queries evaluated at once

    Returns
    -------
    numerator : ndarray of shape (n_queries,) or (n_queries, n_outputs)
    denominator : ndarray of shape (n_queries,)
    """
    queries = np.atleast_2d(queries)
    numerator = np.zeros((len(queries),) + np.shape(targets)[1:])
    denominator = np.zeros(len(queries))
    for start in range(0, len(queries), chunk_size):
        block = slice(start, start + chunk_size)
        weights = kernel.evaluate(pairwise_sq_distances(queries[block], references))
        denominator[block] = weights.sum(axis=1)
        numerator[block] = weights @ targets
    return numerator, denominator


class NWRCde:
    """
    Dual-tree Nadaraya-Watson regression over a fixed reference set.

    Args:
        config: Tuning parameters; validated on construction.

    Example:
        >>> engine = NWRCde(NWRCdeConfig(bandwidth=0.5, relative_error=0.05))
        >>> engine.init(X_train, y_train)
        >>> result = engine.compute(X_test)
        >>> result.estimates
    """

    def __init__(self, config: NWRCdeConfig):
        self.config = config.validate()
        self.parameters_: NWRCdeGlobal | None = None
        self.scaler_ = None
        self.rng_ = None
        self._qset: NDArray[np.floating] | None = None

    def _as_points(self, X, name: str) -> NDArray[np.floating]:
        X = np.asarray(X, dtype=np.float64)
        if X.ndim == 1 and X.size == 0 and self.parameters_ is not None:
            X = X.reshape(0, self.parameters_.rset.shape[1])
        if X.ndim != 2:
            raise ValueError(f"{name} must be a 2D array, got shape {X.shape}")
        if not np.all(np.isfinite(X)):
            raise ValueError(f"{name} contains NaN or infinite values")
        return X

    def init(self, references, targets) -> "NWRCde":
        """Build the reference tree and kernel from training data.

        Args:
            references: Reference points of shape (n_references, n_features).
            targets: One target value per reference point.

        Returns:
            self: The initialized engine.
        """
        config = self.config
        references = self._as_points(references, "references")
        targets = np.asarray(targets, dtype=np.float64)
        if references.shape[0] == 0:
            raise ValueError("references must contain at least one point")
        if targets.ndim != 1 or targets.shape[0] != references.shape[0]:
            raise ValueError(
                f"targets has shape {targets.shape}, expected ({references.shape[0]},)"
            )
        if not np.all(np.isfinite(targets)):
            raise ValueError("targets contains NaN or infinite values")

        self.scaler_ = None
        if config.scaling != "none":
            self.scaler_ = SCALERS[config.scaling]().fit(references)
            references = self.scaler_.transform(references)

        kernel = get_kernel(config.kernel, config.bandwidth)
        rroot, old_from_new, rset = build_ball_tree(references, config.leaf_size)
        rset_targets = targets[old_from_new]

        series = None
        if config.expansion_order is not None:
            if isinstance(kernel, GaussianKernel):
                series = HermiteSeries(
                    kernel,
                    config.expansion_order,
                    config.multiplicative_expansion,
                    rset,
                    rset_targets,
                )
            else:
                logger.debug("no series expansion available for %r", kernel)

        self.parameters_ = NWRCdeGlobal(
            config=config,
            kernel=kernel,
            rset=rset,
            rset_targets=rset_targets,
            rroot=rroot,
            old_from_new_references=old_from_new,
            rset_target_sum=float(targets.sum()),
            series=series,
        )
        self._pre_process_reference_tree(rroot)
        logger.debug(
            "built reference tree over %d points in %d dimensions",
            rset.shape[0],
            rset.shape[1],
        )
        return self

    def _check_queries(self, queries) -> NDArray[np.floating]:
        if self.parameters_ is None:
            raise RuntimeError("Must call init() before computing estimates")
        queries = self._as_points(queries, "queries")
        n_features = self.parameters_.rset.shape[1]
        if queries.shape[1] != n_features:
            raise ValueError(
                f"queries have {queries.shape[1]} features, expected {n_features}"
            )
        if self.scaler_ is not None and len(queries) > 0:
            queries = self.scaler_.transform(queries)
        return queries

    def compute(self, queries) -> NWRCdeQueryResult:
        """Approximate the Nadaraya-Watson sums at every query point.

        Args:
            queries: Query points of shape (n_queries, n_features).

        Returns:
            result: Finalized sums and estimates in the order of ``queries``.

        Raises:
            TraversalDepthError: If the trees are too deep to recurse over.
        """
        queries = self._check_queries(queries)
        if len(queries) == 0:
            return NWRCdeQueryResult(0).finalize()

        config = self.config
        result = NWRCdeQueryResult(len(queries))
        qroot, old_from_new, self._qset = build_ball_tree(queries, config.leaf_size)
        self.rng_ = check_random_state(copy.deepcopy(config.random_state))

        self._pre_process_query_tree(qroot)
        try:
            self._canonical(qroot, self.parameters_.rroot, config.probability, result)
        except RecursionError as exc:
            raise TraversalDepthError(
                "tree recursion exceeded the interpreter stack limit; "
                "try a larger leaf_size"
            ) from exc
        self._post_process_query_tree(qroot, result)
        self._certify(result)
        self._qset = None

        result.finalize(old_from_new)
        logger.info(
            "dual-tree regression over %d queries and %d references: %s",
            len(queries),
            self.parameters_.num_references,
            result.stats(),
        )
        return result

    def naive(self, queries) -> NWRCdeQueryResult:
        """Exact sums by brute force, for verification."""
        queries = self._check_queries(queries)
        parameters = self.parameters_
        result = NWRCdeQueryResult(len(queries))
        if len(queries) == 0:
            return result.finalize()

        weights = np.column_stack(
            (parameters.rset_targets, np.abs(parameters.rset_targets))
        )
        numerators, denominator = naive_sums(
            queries, parameters.rset, weights, parameters.kernel
        )
        result.d_l[:] = result.d_e[:] = result.d_u[:] = denominator
        result.n_l[:] = result.n_e[:] = result.n_u[:] = numerators[:, 0]
        result.a_l[:] = numerators[:, 1]
        result.n_pruned[:] = parameters.num_references
        result.num_base_cases = 1
        return result.finalize()

    def _pre_process_reference_tree(self, node: BallNode) -> None:
        parameters = self.parameters_
        if node.is_leaf():
            node.stat = ReferenceStat.from_targets(
                parameters.rset_targets[node.begin:node.end]
            )
            return
        self._pre_process_reference_tree(node.left)
        self._pre_process_reference_tree(node.right)
        node.stat = ReferenceStat.merge(node.left.stat, node.right.stat)

    def _pre_process_query_tree(self, qroot: BallNode) -> None:
        for node in iter_nodes(qroot):
            if node.stat is None:
                node.stat = NWRCdeQueryStat()
            else:
                node.stat.init()

    def _post_process_query_tree(self, qnode: BallNode, result: NWRCdeQueryResult) -> None:
        postponed = qnode.stat.postponed
        if qnode.is_leaf():
            postponed.apply_to_points(result, self._qset, qnode.begin, qnode.end)
            return
        postponed.push_to(qnode)
        self._post_process_query_tree(qnode.left, result)
        self._post_process_query_tree(qnode.right, result)

    def _certify(self, result: NWRCdeQueryResult) -> None:
        """
        Recompute exactly every point that spent more error than its final
        sums allow.

        Prune allowances are taken from partial sums. With targets of both
        signs the partial numerator interval can overstate the final |n|,
        so the budget is checked again once every reference is accounted
        for. With non-negative targets no point ever fails.
        """
        config = self.config
        tolerance = config.per_sum_tolerance
        slack = 1.0 + 1e-10
        abs_n = abs_lower_bound(result.n_l, result.n_u)
        allowed_d = tolerance * result.d_l * slack
        allowed_n = (
            tolerance * abs_n + config.threshold * (1.0 - tolerance) * result.d_l
        ) * slack
        failed = np.flatnonzero((result.used_d > allowed_d) | (result.used_n > allowed_n))
        result.num_exact_fallbacks = len(failed)
        if len(failed) == 0:
            return

        logger.debug(
            "%d of %d query points exceeded their error allowance, "
            "recomputing them exactly",
            len(failed),
            result.n_queries,
        )
        parameters = self.parameters_
        weights = np.column_stack(
            (parameters.rset_targets, np.abs(parameters.rset_targets))
        )
        numerators, denominator = naive_sums(
            self._qset[failed], parameters.rset, weights, parameters.kernel
        )
        for name in ("d_l", "d_e", "d_u"):
            getattr(result, name)[failed] = denominator
        for name in ("n_l", "n_e", "n_u"):
            getattr(result, name)[failed] = numerators[:, 0]
        result.a_l[failed] = numerators[:, 1]
        result.used_d[failed] = 0.0
        result.used_n[failed] = 0.0

    def _refine_summary(self, qnode: BallNode) -> None:
        summary = qnode.stat.summary
        summary.start_reaccumulate()
        for child in (qnode.left, qnode.right):
            summary.accumulate(child.stat.summary, child.stat.postponed)

    def _canonical(
        self,
        qnode: BallNode,
        rnode: BallNode,
        probability: float,
        result: NWRCdeQueryResult,
    ) -> bool:
        """
        Accumulate the contribution of rnode to every point of qnode.

        Returns True when the contribution was resolved without any
        approximation error.
        """
        result.num_pairs_visited += 1
        delta = NWRCdeDelta.finite_difference(self.parameters_, qnode, rnode)

        if not delta.consistent:
            result.num_inconsistent_bounds += 1
            logger.debug(
                "inconsistent kernel bounds (%g, %g) for query points [%d, %d) "
                "and reference points [%d, %d), not pruning",
                delta.kernel_lower,
                delta.kernel_upper,
                qnode.begin,
                qnode.end,
                rnode.begin,
                rnode.end,
            )
        elif self._prune(qnode, rnode, delta, probability, result):
            return delta.exact

        if qnode.is_leaf() and rnode.is_leaf():
            self._base_case(qnode, rnode, result)
            return True
        if qnode.is_leaf():
            return self._split_reference(qnode, rnode, probability, result)

        qnode.stat.postponed.push_to(qnode)
        exact = True
        for qchild in (qnode.left, qnode.right):
            if rnode.is_leaf():
                exact &= self._canonical(qchild, rnode, probability, result)
            else:
                exact &= self._split_reference(qchild, rnode, probability, result)
        self._refine_summary(qnode)
        return exact

    def _split_reference(
        self,
        qnode: BallNode,
        rnode: BallNode,
        probability: float,
        result: NWRCdeQueryResult,
    ) -> bool:
        # Closer child first; the failure probability is split between the
        # two children unless the first resolves exactly.
        first, second = rnode.left, rnode.right
        if min_sq_distance(qnode, second) < min_sq_distance(qnode, first):
            first, second = second, first
        child_probability = float(np.sqrt(probability))
        first_exact = self._canonical(qnode, first, child_probability, result)
        second_exact = self._canonical(
            qnode,
            second,
            probability if first_exact else child_probability,
            result,
        )
        return first_exact and second_exact

    def _prune(
        self,
        qnode: BallNode,
        rnode: BallNode,
        delta: NWRCdeDelta,
        probability: float,
        result: NWRCdeQueryResult,
    ) -> bool:
        parameters = self.parameters_
        qstat = qnode.stat
        allowed_d, allowed_n = qstat.summary.allowed_errors(
            parameters, delta, qstat.postponed, rnode
        )

        if delta.exact or (delta.d_err <= allowed_d and delta.n_err <= allowed_n):
            qstat.postponed.apply_delta(delta, rnode.count)
            if delta.exact:
                result.num_exact_prunes += 1
            else:
                result.num_finite_difference_prunes += 1
            return True

        if parameters.series is not None and self._series_prune(
            qnode, rnode, delta, allowed_d, allowed_n
        ):
            result.num_series_prunes += 1
            return True

        if probability < 1.0 and self._monte_carlo_prune(
            qnode, rnode, delta, allowed_d, allowed_n, probability, result
        ):
            result.num_monte_carlo_prunes += 1
            return True
        return False

    def _series_prune(
        self,
        qnode: BallNode,
        rnode: BallNode,
        delta: NWRCdeDelta,
        allowed_d: float,
        allowed_n: float,
    ) -> bool:
        series = self.parameters_.series
        rstat = rnode.stat
        tolerance = allowed_d / rstat.count
        if rstat.abs_target_sum > 0:
            tolerance = min(tolerance, allowed_n / rstat.abs_target_sum)
        elif allowed_n < 0:
            return False

        order = int(self.config.expansion_order)
        if not series.can_approximate(qnode, rnode, order, tolerance):
            return False
        expansion, pair_error = series.approximate(qnode, rnode, order)
        delta.use_expansion(expansion, pair_error, rstat)
        qnode.stat.postponed.apply_delta(delta, rnode.count)
        return True

    def _monte_carlo_prune(
        self,
        qnode: BallNode,
        rnode: BallNode,
        delta: NWRCdeDelta,
        allowed_d: float,
        allowed_n: float,
        probability: float,
        result: NWRCdeQueryResult,
    ) -> bool:
        """
        Estimate the pair from a uniform sample of rnode's points.

        Every sampled kernel value lies in the finite-difference interval,
        so by Hoeffding's inequality each of the two sample means is within
        ``range * sqrt(ln(4 / (1 - p)) / (2 m))`` of its expectation with
        probability at least 1 - (1 - p) / 2.
        """
        parameters = self.parameters_
        config = self.config
        rstat = rnode.stat
        log_term = np.log(4.0 / (1.0 - probability))

        lower, upper = delta.kernel_lower, delta.kernel_upper
        corners = (
            lower * rstat.target_min,
            lower * rstat.target_max,
            upper * rstat.target_min,
            upper * rstat.target_max,
        )
        width_d = (upper - lower) * rstat.count
        width_n = (max(corners) - min(corners)) * rstat.count

        required = float(config.min_samples)
        for width, allowed in ((width_d, allowed_d), (width_n, allowed_n)):
            if width <= 0:
                continue
            if allowed <= 0:
                return False
            required = max(required, 0.5 * log_term * (width / allowed) ** 2)
        if required > config.max_sample_fraction * rstat.count:
            return False

        num_samples = int(np.ceil(required))
        samples = self.rng_.randint(rnode.begin, rnode.end, size=num_samples)
        qspan = slice(qnode.begin, qnode.end)
        weights = parameters.kernel.evaluate(
            pairwise_sq_distances(self._qset[qspan], parameters.rset[samples])
        )
        scale = rstat.count / num_samples
        result.d_e[qspan] += scale * weights.sum(axis=1)
        result.n_e[qspan] += scale * (weights @ parameters.rset_targets[samples])

        half_width = np.sqrt(0.5 * log_term / num_samples)
        delta.use_sample(width_d * half_width, width_n * half_width)
        qnode.stat.postponed.apply_delta(delta, rnode.count)
        return True

    def _base_case(
        self,
        qnode: BallNode,
        rnode: BallNode,
        result: NWRCdeQueryResult,
    ) -> None:
        """Exhaustive evaluation of every point pair of two leaves."""
        parameters = self.parameters_
        qspan = slice(qnode.begin, qnode.end)
        rspan = slice(rnode.begin, rnode.end)
        weights = parameters.kernel.evaluate(
            pairwise_sq_distances(self._qset[qspan], parameters.rset[rspan])
        )
        targets = parameters.rset_targets[rspan]

        denominator = weights.sum(axis=1)
        numerator = weights @ targets
        result.d_l[qspan] += denominator
        result.d_e[qspan] += denominator
        result.d_u[qspan] += denominator
        result.n_l[qspan] += numerator
        result.n_e[qspan] += numerator
        result.n_u[qspan] += numerator
        result.a_l[qspan] += weights @ np.abs(targets)
        result.n_pruned[qspan] += rnode.count
        result.num_base_cases += 1

        summary = qnode.stat.summary
        summary.start_reaccumulate()
        summary.accumulate_points(result, qnode.begin, qnode.end)
