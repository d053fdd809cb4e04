"""Turn a model specification and a modelling dataset into design matrices.

The resulting :class:`ModelStructure` is what an inference engine consumes:
the response on the model scale, a dense population-level design ``X`` and
one sparse indicator (or slope) matrix per random-effect term. The location
parameter vector is laid out as ``[b (population), r_1, ..., r_B]``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import scipy.sparse as sp

from pvhier.data.filtering import ModelDataset, require_defined_normalization
from pvhier.errors import InsufficientData
from pvhier.models.registry import Family, ModelSpec, RandomTerm, ResponseSpec

logger = logging.getLogger(__name__)

MIN_ROWS = 10


@dataclass(frozen=True)
class RandomBlock:
    term: RandomTerm
    levels: Tuple[str, ...]
    counts: Tuple[int, ...]

    @property
    def name(self) -> str:
        return self.term.name

    @property
    def size(self) -> int:
        return len(self.levels)


@dataclass(frozen=True, eq=False)
class ModelStructure:
    model_name: str
    family: Family
    response: ResponseSpec
    y: np.ndarray
    offset: float
    population_names: Tuple[str, ...]
    X: np.ndarray
    blocks: Tuple[RandomBlock, ...]
    Z: Tuple[sp.csr_matrix, ...]
    row_index: np.ndarray

    @property
    def n_obs(self) -> int:
        return int(self.y.shape[0])

    @property
    def n_population(self) -> int:
        return int(self.X.shape[1])

    @property
    def n_location(self) -> int:
        return self.n_population + sum(b.size for b in self.blocks)

    def block_slices(self) -> Dict[str, slice]:
        out: Dict[str, slice] = {}
        start = self.n_population
        for b in self.blocks:
            out[b.name] = slice(start, start + b.size)
            start += b.size
        return out

    @property
    def W(self) -> sp.csr_matrix:
        """Full location design ``[X | Z_1 | ... | Z_B]``."""
        return sp.hstack([sp.csr_matrix(self.X)] + list(self.Z), format="csr")

    @property
    def y_centered(self) -> np.ndarray:
        """Response with the fixed intercept removed."""
        return self.y - self.offset

    def observed_response(self) -> np.ndarray:
        """Response on its natural scale (before the log of the lognormal family)."""
        return np.exp(self.y) if self.family is Family.LOGNORMAL else self.y.copy()

    def transform(self, df: pd.DataFrame) -> Tuple[sp.csr_matrix, Dict[str, np.ndarray]]:
        """Design for new rows using the training levels.

        Returns the location design and, per random-effect term, a mask of
        rows whose group level was not seen during fitting (their column
        block is all zeros).
        """

        X = _population_design(df, self.population_names)
        Zs: List[sp.csr_matrix] = []
        unseen: Dict[str, np.ndarray] = {}
        for block in self.blocks:
            labels = block.term.grouping.labels(df)
            codes = pd.Categorical(labels, categories=list(block.levels)).codes
            unseen[block.name] = codes < 0
            Zs.append(_indicator(df, block.term, codes, len(block.levels)))
        return sp.hstack([sp.csr_matrix(X)] + Zs, format="csr"), unseen


def _numeric(df: pd.DataFrame, col: str) -> np.ndarray:
    s = df[col]
    if pd.api.types.is_bool_dtype(s) or s.dtype == object:
        try:
            s = s.astype(float)
        except (TypeError, ValueError):
            pass
    return pd.to_numeric(s, errors="coerce").to_numpy(dtype=float)


def _population_design(df: pd.DataFrame, names: Tuple[str, ...]) -> np.ndarray:
    cols = []
    for name in names:
        if name == "Intercept":
            cols.append(np.ones(len(df)))
        else:
            cols.append(_numeric(df, name))
    if not cols:
        return np.zeros((len(df), 0))
    return np.column_stack(cols)


def _indicator(df: pd.DataFrame, term: RandomTerm, codes: np.ndarray, n_levels: int) -> sp.csr_matrix:
    n = len(df)
    rows = np.flatnonzero(codes >= 0)
    if term.covariate is None:
        vals = np.ones(rows.size)
    else:
        vals = _numeric(df, term.covariate)[rows]
    return sp.csr_matrix((vals, (rows, codes[rows])), shape=(n, n_levels))


def build_structure(
    spec: ModelSpec,
    dataset: ModelDataset,
    *,
    min_rows: int = MIN_ROWS,
) -> ModelStructure:
    """Build design matrices for ``spec`` on ``dataset``.

    Raises ``InsufficientData`` when the data cannot identify the requested
    structure: too few usable rows, a declared group level without rows, or
    a covariate without variation.
    """

    df = dataset.to_frame()
    if df.empty:
        raise InsufficientData(f"[{spec.name}] dataset '{dataset.name}' is empty")

    if spec.response.column == "yNorm":
        require_defined_normalization(df)

    values = spec.response.values(df)
    usable = np.isfinite(values)
    if spec.family is Family.LOGNORMAL:
        usable &= values > 0
    for term in spec.grouping:
        usable &= term.grouping.labels(df).notna().to_numpy()
    for cov in set(spec.terms) | {t.covariate for t in spec.grouping if t.covariate}:
        usable &= np.isfinite(_numeric(df, cov))

    dropped = int((~usable).sum())
    if dropped:
        logger.warning(
            "[%s] dropping %d of %d row(s) with unusable response or covariates",
            spec.name,
            dropped,
            len(df),
        )
    df = df.loc[usable].reset_index(drop=True)
    row_index = np.flatnonzero(usable)
    values = values[usable]

    population_names: Tuple[str, ...] = tuple(
        ([] if spec.priors.intercept_fixed else ["Intercept"]) + list(spec.terms)
    )
    if len(df) < max(int(min_rows), len(population_names) + 1):
        raise InsufficientData(
            f"[{spec.name}] only {len(df)} usable row(s) in '{dataset.name}' (need at least {max(min_rows, len(population_names) + 1)})"
        )

    X = _population_design(df, population_names)
    for j, name in enumerate(population_names):
        if name != "Intercept" and np.nanstd(X[:, j]) == 0:
            raise InsufficientData(f"[{spec.name}] covariate '{name}' is constant; its coefficient is not identifiable")

    blocks: List[RandomBlock] = []
    Zs: List[sp.csr_matrix] = []
    for term in spec.grouping:
        labels = term.grouping.labels(df)
        declared = term.grouping.declared_levels
        observed = labels.value_counts()
        if declared is not None:
            empty = [lvl for lvl in declared if observed.get(lvl, 0) == 0]
            if empty:
                raise InsufficientData(
                    f"[{spec.name}] grouping '{term.name}' has no observations for level(s) {empty}"
                )
            levels = tuple(declared)
        else:
            levels = tuple(sorted(observed.index.astype(str)))
        if term.covariate is not None:
            if np.nanstd(_numeric(df, term.covariate)) == 0:
                raise InsufficientData(
                    f"[{spec.name}] random slope '{term.name}' has a constant covariate '{term.covariate}'"
                )
        codes = pd.Categorical(labels, categories=list(levels)).codes
        blocks.append(RandomBlock(term=term, levels=levels, counts=tuple(int(observed.get(l, 0)) for l in levels)))
        Zs.append(_indicator(df, term, codes, len(levels)))
        if len(levels) < 2:
            logger.info("[%s] grouping '%s' has a single level; its SD is informed by the prior only", spec.name, term.name)

    y = np.log(values) if spec.family is Family.LOGNORMAL else values
    offset = spec.priors.intercept.params[0] if spec.priors.intercept_fixed else 0.0

    return ModelStructure(
        model_name=spec.name,
        family=spec.family,
        response=spec.response,
        y=np.asarray(y, dtype=float),
        offset=float(offset),
        population_names=population_names,
        X=X,
        blocks=tuple(blocks),
        Z=tuple(Zs),
        row_index=row_index,
    )


def frame_for_structure(dataset: ModelDataset, structure: ModelStructure) -> pd.DataFrame:
    """Rows of ``dataset`` that entered ``structure`` (in design order)."""
    return dataset.to_frame().iloc[structure.row_index].reset_index(drop=True)


def location_names(structure: ModelStructure) -> List[Tuple[str, Optional[str]]]:
    """(variable, level) per entry of the location vector."""
    out: List[Tuple[str, Optional[str]]] = [(f"b_{n}", None) for n in structure.population_names]
    for b in structure.blocks:
        out.extend((f"r_{b.name}", lvl) for lvl in b.levels)
    return out
