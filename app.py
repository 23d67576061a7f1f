"""
Loan Portfolio Risk Dashboard.

Single-page Streamlit app over the report catalog:
  Sidebar: data source and report picker
  Main:    formatted report table, bar chart of its first rate column,
           CSV download
"""

from pathlib import Path

import pandas as pd
import plotly.express as px
import streamlit as st

from portfolio_risk.catalog import CATALOG
from portfolio_risk.config import configure_logging, load_config
from portfolio_risk.exceptions import AnalyticsError
from portfolio_risk.records import PROSPER_COLUMNS, RecordStore
from portfolio_risk.reports import format_report, run_report

DB_PATH = Path("data/loans.db")

# ---------------------------------------------------------------------------
# Page config
# ---------------------------------------------------------------------------
st.set_page_config(page_title="Loan Portfolio Risk", layout="wide")
st.title("Loan Portfolio Risk Analytics")

config = load_config()
configure_logging(config.log_level)


# ---------------------------------------------------------------------------
# Data loading (cached)
# ---------------------------------------------------------------------------
@st.cache_resource
def load_store(db_path: str, table: str) -> RecordStore:
    """Load the loans table once per session."""
    return RecordStore.from_sqlite(
        db_path, table=table, rename=PROSPER_COLUMNS,
        max_rows=config.engine.max_rows, as_of_date=config.engine.as_of_date,
    )


@st.cache_data
def cached_report(_store: RecordStore, name: str, cache_key: str = '') -> pd.DataFrame:
    return run_report(_store, CATALOG[name], config=config)


# ---------------------------------------------------------------------------
# Sidebar controls
# ---------------------------------------------------------------------------
with st.sidebar:
    st.header("Data")
    db_path = st.text_input("SQLite database", value=str(DB_PATH))
    table = st.text_input("Table", value="loans")

    st.markdown("---")
    st.header("Report")
    titles = {spec.title: name for name, spec in CATALOG.items()}
    title = st.selectbox("Report", options=list(titles))
    report_name = titles[title]

if not Path(db_path).exists():
    st.warning(f"Database not found: {db_path}")
    st.stop()

try:
    store = load_store(db_path, table)
    result = cached_report(store, report_name, cache_key=f"{db_path}:{table}")
except AnalyticsError as exc:
    st.error(str(exc))
    st.stop()

with st.sidebar:
    st.markdown("---")
    st.metric("Loans", f"{len(store):,}")
    st.metric("Report Rows", f"{len(result):,}")

# ---------------------------------------------------------------------------
# Report table
# ---------------------------------------------------------------------------
st.subheader(title)
if result.empty:
    st.info("The report returned no rows for this portfolio.")
    st.stop()

st.dataframe(format_report(result), use_container_width=True, hide_index=True)

# ---------------------------------------------------------------------------
# Chart of the first rate column against the report's label column
# ---------------------------------------------------------------------------
pct_columns = [c for c in result.columns if c.endswith('_pct')]
label_columns = [c for c in result.columns if not pd.api.types.is_numeric_dtype(result[c])]
if pct_columns and label_columns:
    chart_df = result.copy()
    x_col = label_columns[0]
    chart_df[x_col] = chart_df[x_col].astype(str)
    fig = px.bar(chart_df, x=x_col, y=pct_columns[0],
                 title=f"{pct_columns[0]} by {x_col}",
                 labels={pct_columns[0]: pct_columns[0].replace('_', ' ')})
    fig.update_layout(height=420, yaxis_ticksuffix="%")
    st.plotly_chart(fig, use_container_width=True)

st.download_button(
    "Download CSV",
    data=result.to_csv(index=False).encode("utf-8"),
    file_name=f"{report_name}.csv",
    mime="text/csv",
)
