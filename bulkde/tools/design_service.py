"""
Design matrix service for two-level contrasts.

This module turns a contrast [factor, numerator, reference]
into the intercept + indicator design used by the dispersion estimator
and the GLM tester, validating it against the sample metadata.
"""

from typing import Any, Dict, List, Tuple

import anndata
import numpy as np
import pandas as pd

from bulkde.core import DesignError
from bulkde.utils.logger import get_logger

logger = get_logger(__name__)

INTERCEPT = "(Intercept)"


class DesignService:
    """
    Service for building and validating contrast designs.
    """

    def validate_contrast(self, metadata: pd.DataFrame, contrast: List[str]) -> None:
        """
        Check that a contrast can be fitted from the metadata.

        Args:
            metadata: Sample metadata indexed by sample id
            contrast: [factor, numerator level, reference level]

        Raises:
            DesignError: If the factor or a level is missing, or a level has
                no samples
        """
        if contrast is None or len(contrast) != 3:
            raise DesignError("Contrast must be [factor, level1, level2]")

        factor, numerator, reference = contrast
        if factor not in metadata.columns:
            raise DesignError(
                f"Contrast factor '{factor}' not found in metadata. "
                f"Available columns: {list(metadata.columns)}",
                details={"factor": factor, "columns": list(metadata.columns)},
            )

        available = set(metadata[factor].dropna().astype(str))
        missing = [level for level in (numerator, reference) if level not in available]
        if missing:
            raise DesignError(
                f"Contrast levels {missing} not found in factor '{factor}'. "
                f"Available: {sorted(available)}",
                details={"missing_levels": missing, "available": sorted(available)},
            )
        if numerator == reference:
            raise DesignError("Contrast levels must differ")

    def build_contrast_design(
        self, metadata: pd.DataFrame, contrast: List[str]
    ) -> Dict[str, Any]:
        """
        Build the intercept + indicator design for a two-level contrast.

        Only samples belonging to one of the two levels enter the design.

        Args:
            metadata: Sample metadata indexed by sample id
            contrast: [factor, numerator level, reference level]

        Returns:
            Dict[str, Any]: design_df, design_matrix, coefficient_names,
            contrast_name, sample_mask and rank

        Raises:
            DesignError: If the contrast is invalid or the design is rank deficient
        """
        self.validate_contrast(metadata, contrast)
        factor, numerator, reference = contrast

        levels = metadata[factor].astype(str)
        sample_mask = levels.isin([numerator, reference]).to_numpy()

        contrast_name = f"{factor}_{numerator}_vs_{reference}"
        design_df = pd.DataFrame(index=metadata.index[sample_mask])
        design_df[INTERCEPT] = 1.0
        design_df[contrast_name] = (levels[sample_mask] == numerator).astype(float)

        design_matrix = design_df.to_numpy(dtype=np.float64)
        rank = int(np.linalg.matrix_rank(design_matrix))
        if rank < design_matrix.shape[1]:
            raise DesignError(
                f"Design for {contrast_name} is rank deficient",
                details={"rank": rank, "n_coefficients": design_matrix.shape[1]},
            )

        logger.info(
            f"Design matrix constructed: {design_matrix.shape[0]} samples x "
            f"{design_matrix.shape[1]} coefficients for {contrast_name}"
        )
        return {
            "design_df": design_df,
            "design_matrix": design_matrix,
            "coefficient_names": list(design_df.columns),
            "contrast_name": contrast_name,
            "sample_mask": sample_mask,
            "rank": rank,
        }

    def subset_to_contrast(
        self, adata: anndata.AnnData, contrast: List[str]
    ) -> Tuple[anndata.AnnData, Dict[str, Any]]:
        """
        Restrict a dataset to the samples of the two contrast levels.

        Args:
            adata: Samples x genes dataset
            contrast: [factor, numerator level, reference level]

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any]]: Subset copy with the design
            stored in uns["design"], and the design dictionary
        """
        design = self.build_contrast_design(adata.obs, contrast)
        subset = adata[design["sample_mask"]].copy()
        n_dropped = int((~design["sample_mask"]).sum())
        if n_dropped:
            logger.info(f"Excluded {n_dropped} samples outside the contrast levels")
        subset.obsm["design_matrix"] = design["design_df"].loc[subset.obs_names]
        subset.uns["design"] = {
            "contrast": list(contrast),
            "contrast_name": design["contrast_name"],
            "coefficient_names": design["coefficient_names"],
        }
        return subset, design
