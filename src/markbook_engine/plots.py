from typing import Any, Dict, List

import pandas as pd
import plotly.express as px
import plotly.graph_objects as go


def distribution_chart(bins: List[Dict[str, Any]], title: str = "Final mark distribution") -> go.Figure:
    if not bins:
        return go.Figure()
    frame = pd.DataFrame(bins)
    fig = px.bar(frame, x="label", y="count", title=title, labels={"label": "Final mark", "count": "Students"})
    fig.update_layout(bargap=0.05)
    return fig


def mark_set_average_bar(per_mark_set: List[Dict[str, Any]]) -> go.Figure:
    frame = pd.DataFrame(per_mark_set)
    if frame.empty or frame["classAverage"].isna().all():
        return go.Figure()
    fig = px.bar(
        frame.dropna(subset=["classAverage"]),
        x="code",
        y="classAverage",
        hover_data=["classMedian", "finalMarkCount", "weight"],
        title="Class average by mark set",
    )
    fig.update_layout(xaxis_title="Mark set", yaxis_title="Class average (%)", yaxis_range=[0, 100])
    return fig


def category_bar(per_category: List[Dict[str, Any]]) -> go.Figure:
    frame = pd.DataFrame(per_category)
    if frame.empty or frame["classAverage"].isna().all():
        return go.Figure()
    fig = px.bar(
        frame.dropna(subset=["classAverage"]),
        x="name",
        y="classAverage",
        color="isBonus",
        title="Class average by category",
    )
    fig.update_layout(xaxis_title="Category", yaxis_title="Class average (%)")
    return fig
