"""
Node-pair bounds and per-node bookkeeping for the dual-tree engine.

- NWRCdeConfig: read-only tuning parameters shared by the whole recursion.
- NWRCdeGlobal: reference data, kernel and tree owned by one estimator.
- NWRCdeDelta: bounds on one (query node, reference node) contribution.
- NWRCdeQueryPostponed: contributions applied to a whole query node and
  not yet pushed to its children or points.
- NWRCdeQuerySummary: tightest bounds known over a query node's points,
  used to decide whether a node pair can be pruned.

Notation: ``d`` is the denominator sum of kernel values, ``n`` the
numerator sum of kernel values times targets and ``a`` the sum of kernel
values times absolute targets. Suffixes ``_l``, ``_e`` and ``_u`` are lower
bound, estimate and upper bound.
"""

from dataclasses import dataclass, field
from typing import Any, Literal

import numpy as np
from numpy.typing import NDArray

from dualtree_regression.kernels import RadialKernel
from dualtree_regression.tree import BallNode, min_max_sq_distance


@dataclass(frozen=True)
class NWRCdeConfig:
    """
    Tuning parameters of the dual-tree Nadaraya-Watson regression.

    Attributes
    ----------
    bandwidth : float
        Kernel bandwidth, must be positive
    relative_error : float
        Required relative error of the regression estimate
    probability : float
        Probability with which the relative error must hold; 1 disables
        Monte Carlo pruning
    threshold : float
        Absolute slack added to the guarantee: estimates satisfy
        ``|y_hat - y| <= relative_error * |y| + threshold``
    leaf_size : int
        Maximum number of points per tree leaf
    kernel : str
        "gaussian" or "epanechnikov"
    expansion_order : int or None
        Hermite expansion order; None disables series expansions
    multiplicative_expansion : bool
        Use O(p^D) instead of O(D^p) expansion terms
    scaling : str
        "none", "range" or "standardize" preprocessing of the points
    min_samples : int
        Smallest Monte Carlo sample drawn from a reference node
    max_sample_fraction : float
        Monte Carlo is attempted only when the required sample is smaller
        than this fraction of the reference node
    random_state : int, RandomState or None
        Seed of the Monte Carlo sampler, reset at every computation
    """

    bandwidth: float
    relative_error: float = 0.1
    probability: float = 1.0
    threshold: float = 0.0
    leaf_size: int = 20
    kernel: str = "gaussian"
    expansion_order: int | None = 4
    multiplicative_expansion: bool = False
    scaling: Literal["none", "range", "standardize"] = "none"
    min_samples: int = 25
    max_sample_fraction: float = 0.5
    random_state: Any = None

    def validate(self) -> "NWRCdeConfig":
        """Raise ValueError for any out-of-range parameter."""
        if not np.isfinite(self.bandwidth) or self.bandwidth <= 0:
            raise ValueError(f"bandwidth must be positive, got {self.bandwidth}")
        if not np.isfinite(self.relative_error) or self.relative_error < 0:
            raise ValueError(
                f"relative_error must be non-negative, got {self.relative_error}"
            )
        if not 0 < self.probability <= 1:
            raise ValueError(f"probability must be in (0, 1], got {self.probability}")
        if not np.isfinite(self.threshold) or self.threshold < 0:
            raise ValueError(f"threshold must be non-negative, got {self.threshold}")
        if int(self.leaf_size) < 1:
            raise ValueError(f"leaf_size must be at least 1, got {self.leaf_size}")
        if self.expansion_order is not None and int(self.expansion_order) < 1:
            raise ValueError(
                f"expansion_order must be at least 1 or None, got {self.expansion_order}"
            )
        if self.scaling not in ("none", "range", "standardize"):
            raise ValueError(f"Unknown scaling method: {self.scaling}")
        if int(self.min_samples) < 1:
            raise ValueError(f"min_samples must be at least 1, got {self.min_samples}")
        if not 0 < self.max_sample_fraction <= 1:
            raise ValueError(
                f"max_sample_fraction must be in (0, 1], got {self.max_sample_fraction}"
            )
        return self

    @property
    def per_sum_tolerance(self) -> float:
        """Relative error allowed on each sum so the ratio meets relative_error."""
        return self.relative_error / (2.0 + self.relative_error)


@dataclass(eq=False)
class ReferenceStat:
    """Target statistics of one reference node."""

    count: int
    target_sum: float
    abs_target_sum: float
    target_min: float
    target_max: float
    expansions: dict = field(default_factory=dict)

    @classmethod
    def from_targets(cls, targets: NDArray[np.floating]) -> "ReferenceStat":
        return cls(
            count=len(targets),
            target_sum=float(targets.sum()),
            abs_target_sum=float(np.abs(targets).sum()),
            target_min=float(targets.min()),
            target_max=float(targets.max()),
        )

    @classmethod
    def merge(cls, left: "ReferenceStat", right: "ReferenceStat") -> "ReferenceStat":
        return cls(
            count=left.count + right.count,
            target_sum=left.target_sum + right.target_sum,
            abs_target_sum=left.abs_target_sum + right.abs_target_sum,
            target_min=min(left.target_min, right.target_min),
            target_max=max(left.target_max, right.target_max),
        )


@dataclass(eq=False)
class NWRCdeGlobal:
    """Reference side state owned by one estimator."""

    config: NWRCdeConfig
    kernel: RadialKernel
    rset: NDArray[np.floating]
    rset_targets: NDArray[np.floating]
    rroot: BallNode
    old_from_new_references: NDArray[np.intp]
    rset_target_sum: float
    series: Any = None

    @property
    def num_references(self) -> int:
        return self.rset.shape[0]


class NWRCdeDelta:
    """
    Bounds on the contribution of a reference node to every point of a
    query node.

    Built from finite differences: the kernel evaluated at the largest and
    smallest possible distance between the two balls bounds every pairwise
    kernel value. The estimate is the midpoint, so the error half-width is
    half the bound width. A series expansion or a Monte Carlo sample can
    replace the estimate with a tighter one; the finite-difference lower and
    upper bounds stay valid either way.
    """

    __slots__ = (
        "d_l", "d_e", "d_u", "n_l", "n_e", "n_u", "a_l",
        "d_err", "n_err", "kernel_lower", "kernel_upper", "expansion",
    )

    def __init__(self):
        self.d_l = self.d_e = self.d_u = 0.0
        self.n_l = self.n_e = self.n_u = 0.0
        self.a_l = 0.0
        self.d_err = self.n_err = 0.0
        self.kernel_lower = self.kernel_upper = 0.0
        self.expansion = None

    @classmethod
    def finite_difference(
        cls, parameters: NWRCdeGlobal, qnode: BallNode, rnode: BallNode
    ) -> "NWRCdeDelta":
        min_sq, max_sq = min_max_sq_distance(qnode, rnode)
        kernel_lower, kernel_upper = parameters.kernel.bound(min_sq, max_sq)
        rstat = rnode.stat

        delta = cls()
        delta.kernel_lower = kernel_lower
        delta.kernel_upper = kernel_upper
        mid = 0.5 * (kernel_lower + kernel_upper)
        half_width = 0.5 * (kernel_upper - kernel_lower)

        delta.d_l = kernel_lower * rstat.count
        delta.d_u = kernel_upper * rstat.count
        delta.d_e = mid * rstat.count
        delta.d_err = half_width * rstat.count

        delta.n_e = mid * rstat.target_sum
        delta.n_err = half_width * rstat.abs_target_sum
        delta.n_l = delta.n_e - delta.n_err
        delta.n_u = delta.n_e + delta.n_err

        delta.a_l = kernel_lower * rstat.abs_target_sum
        return delta

    @property
    def consistent(self) -> bool:
        """False when the kernel bounds are not a valid interval."""
        values = (self.kernel_lower, self.kernel_upper)
        return (
            bool(np.all(np.isfinite(values)))
            and 0.0 <= self.kernel_lower <= self.kernel_upper
        )

    @property
    def exact(self) -> bool:
        return self.d_err == 0.0 and self.n_err == 0.0

    def use_expansion(self, expansion, pair_error: float, rstat: ReferenceStat) -> None:
        """Defer the estimate to a series expansion evaluated at the leaves."""
        self.expansion = expansion
        self.d_e = self.n_e = 0.0
        self.d_err = pair_error * rstat.count
        self.n_err = pair_error * rstat.abs_target_sum

    def use_sample(self, d_err: float, n_err: float) -> None:
        """The estimate was written to the points directly by a Monte Carlo sample."""
        self.d_e = self.n_e = 0.0
        self.d_err = d_err
        self.n_err = n_err


class NWRCdeQueryPostponed:
    """
    Contributions applied to a whole query node, pending distribution.

    Scalar fields add up; pending series expansions concatenate. Both
    merges are associative and commutative.
    """

    __slots__ = (
        "d_l", "d_e", "d_u", "n_l", "n_e", "n_u", "a_l",
        "used_d", "used_n", "n_pruned", "expansions",
    )

    def __init__(self):
        self.set_zero()

    def set_zero(self) -> None:
        self.d_l = self.d_e = self.d_u = 0.0
        self.n_l = self.n_e = self.n_u = 0.0
        self.a_l = 0.0
        self.used_d = self.used_n = 0.0
        self.n_pruned = 0.0
        self.expansions = []

    def apply_delta(self, delta: NWRCdeDelta, count: int) -> None:
        self.d_l += delta.d_l
        self.d_e += delta.d_e
        self.d_u += delta.d_u
        self.n_l += delta.n_l
        self.n_e += delta.n_e
        self.n_u += delta.n_u
        self.a_l += delta.a_l
        self.used_d += delta.d_err
        self.used_n += delta.n_err
        self.n_pruned += count
        if delta.expansion is not None:
            self.expansions.append(delta.expansion)

    def apply_postponed(self, other: "NWRCdeQueryPostponed") -> None:
        self.d_l += other.d_l
        self.d_e += other.d_e
        self.d_u += other.d_u
        self.n_l += other.n_l
        self.n_e += other.n_e
        self.n_u += other.n_u
        self.a_l += other.a_l
        self.used_d += other.used_d
        self.used_n += other.used_n
        self.n_pruned += other.n_pruned
        self.expansions.extend(other.expansions)

    def push_to(self, qnode: BallNode) -> None:
        """Move this node's contributions into both children."""
        qnode.left.stat.postponed.apply_postponed(self)
        qnode.right.stat.postponed.apply_postponed(self)
        self.set_zero()

    def apply_to_points(self, result, qset: NDArray[np.floating], begin: int, end: int) -> None:
        """Apply to the points of a leaf, evaluating pending expansions."""
        span = slice(begin, end)
        result.d_l[span] += self.d_l
        result.d_e[span] += self.d_e
        result.d_u[span] += self.d_u
        result.n_l[span] += self.n_l
        result.n_e[span] += self.n_e
        result.n_u[span] += self.n_u
        result.a_l[span] += self.a_l
        result.used_d[span] += self.used_d
        result.used_n[span] += self.used_n
        result.n_pruned[span] += self.n_pruned
        for expansion in self.expansions:
            d_values, n_values = expansion.evaluate(qset[span])
            result.d_e[span] += d_values
            result.n_e[span] += n_values
        self.set_zero()


def abs_lower_bound(lower, upper):
    """Lower bound of |x| for x in [lower, upper]; works elementwise."""
    return np.maximum(np.maximum(lower, -np.asarray(upper)), 0.0)


class NWRCdeQuerySummary:
    """
    Worst-case bounds over the points of a query node.

    Lower bounds and accounted reference counts are minima over the points,
    upper bounds and used errors are maxima. Contributions still postponed
    at the node itself are not included.
    """

    __slots__ = (
        "d_l", "d_u", "n_l", "n_u", "used_d", "used_n", "n_pruned",
    )

    def __init__(self):
        self.init()

    def init(self) -> None:
        self.d_l = self.d_u = 0.0
        self.n_l = self.n_u = 0.0
        self.used_d = self.used_n = 0.0
        self.n_pruned = 0.0

    def start_reaccumulate(self) -> None:
        self.d_l = self.n_l = np.inf
        self.d_u = self.n_u = -np.inf
        self.used_d = self.used_n = 0.0
        self.n_pruned = np.inf

    def accumulate(
        self, summary: "NWRCdeQuerySummary", postponed: NWRCdeQueryPostponed
    ) -> None:
        """Fold in a child's summary together with its postponed state."""
        self.d_l = min(self.d_l, summary.d_l + postponed.d_l)
        self.d_u = max(self.d_u, summary.d_u + postponed.d_u)
        self.n_l = min(self.n_l, summary.n_l + postponed.n_l)
        self.n_u = max(self.n_u, summary.n_u + postponed.n_u)
        self.used_d = max(self.used_d, summary.used_d + postponed.used_d)
        self.used_n = max(self.used_n, summary.used_n + postponed.used_n)
        self.n_pruned = min(self.n_pruned, summary.n_pruned + postponed.n_pruned)

    def accumulate_points(self, result, begin: int, end: int) -> None:
        span = slice(begin, end)
        self.d_l = min(self.d_l, float(result.d_l[span].min()))
        self.d_u = max(self.d_u, float(result.d_u[span].max()))
        self.n_l = min(self.n_l, float(result.n_l[span].min()))
        self.n_u = max(self.n_u, float(result.n_u[span].max()))
        self.used_d = max(self.used_d, float(result.used_d[span].max()))
        self.used_n = max(self.used_n, float(result.used_n[span].max()))
        self.n_pruned = min(self.n_pruned, float(result.n_pruned[span].min()))

    def allowed_errors(
        self,
        parameters: NWRCdeGlobal,
        delta: NWRCdeDelta,
        postponed: NWRCdeQueryPostponed,
        rnode: BallNode,
    ) -> tuple[float, float]:
        """
        Error half-widths a pruned pair may spend on each sum.

        The remaining error slack of the node is shared among the reference
        points not yet accounted for, in proportion to the size of rnode.
        With ``e = eps / (2 + eps)`` the denominator is held to ``e * d`` and
        the numerator to ``e * |n| + threshold * (1 - e) * d``, which keeps
        ``|y_hat - y| <= eps * |y| + threshold`` whatever the target signs.
        """
        config = parameters.config
        tolerance = config.per_sum_tolerance
        d_lower = self.d_l + postponed.d_l + delta.d_l
        abs_n_lower = abs_lower_bound(
            self.n_l + postponed.n_l + delta.n_l,
            self.n_u + postponed.n_u + delta.n_u,
        )
        used_d = self.used_d + postponed.used_d
        used_n = self.used_n + postponed.used_n
        remaining = max(
            parameters.num_references - (self.n_pruned + postponed.n_pruned),
            float(rnode.count),
        )
        share = rnode.count / remaining
        allowed_d = (tolerance * d_lower - used_d) * share
        allowed_n = (
            tolerance * abs_n_lower
            + config.threshold * (1.0 - tolerance) * d_lower
            - used_n
        ) * share
        return allowed_d, allowed_n


class NWRCdeQueryStat:
    """Statistics attached to every query tree node."""

    __slots__ = ("summary", "postponed")

    def __init__(self):
        self.summary = NWRCdeQuerySummary()
        self.postponed = NWRCdeQueryPostponed()

    def init(self) -> None:
        self.summary.init()
        self.postponed.set_zero()
