# pylint: disable=C0103, C0114
from __future__ import annotations

import logging

from pathlib import Path

import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns


logger = logging.getLogger("scmatchpy")


def similarity_heatmap(
    similarity: pd.DataFrame,
    save: str | Path | None = None,
    ax: plt.Axes | None = None,
    cmap: str = "RdBu_r",
    annot: bool = False,
    title: str | None = None,
    xlabel: str | None = None,
    ylabel: str | None = None,
    figsize: tuple[float, float] | None = None,
    dpi: int = 150,
) -> plt.Axes | None:
    """
    Draw a group x group correlation table (e.g. from :func:`scmatchpy.tl.correlate`)
    as a heatmap with the color scale fixed to [-1, 1]. Undefined (NaN) cells are left blank.

    :param similarity: correlation table
    :type similarity: pd.DataFrame
    :param save: if set, the figure is written to this path (format by suffix) and closed, defaults to None
    :type save: str | Path | None, optional
    :param ax: axes to draw on, defaults to None
    :type ax: plt.Axes | None, optional
    :param cmap: diverging colormap, defaults to "RdBu_r"
    :type cmap: str, optional
    :param annot: if to print values in cells, defaults to False
    :type annot: bool, optional
    :param figsize: figure size, by default grows with the table, defaults to None
    :type figsize: tuple[float, float] | None, optional
    :param dpi: resolution of the saved bitmap, defaults to 150
    :type dpi: int, optional
    :return: the axes, or None if the table is empty or the figure was saved
    """
    if similarity.size == 0:
        logger.warning(
            "Similarity table is empty (%i x %i), nothing to plot", *similarity.shape
        )
        return None

    if ax is None:
        if figsize is None:
            figsize = (
                max(4.0, 0.4 * similarity.shape[1] + 2),
                max(3.0, 0.35 * similarity.shape[0] + 1.5),
            )
        _, ax = plt.subplots(figsize=figsize)

    sns.heatmap(
        similarity.astype(float),
        ax=ax,
        cmap=cmap,
        vmin=-1,
        vmax=1,
        center=0,
        annot=annot,
        fmt=".2f",
        square=False,
        cbar_kws={"label": "Spearman correlation"},
    )
    ax.set_xlabel(xlabel if xlabel is not None else (similarity.columns.name or ""))
    ax.set_ylabel(ylabel if ylabel is not None else (similarity.index.name or ""))
    if title is not None:
        ax.set_title(title)

    if save is not None:
        fig = ax.get_figure()
        fig.tight_layout()
        fig.savefig(save, dpi=dpi, bbox_inches="tight")
        plt.close(fig)
        logger.info("Heatmap is saved in %s", save)
        return None

    return ax
