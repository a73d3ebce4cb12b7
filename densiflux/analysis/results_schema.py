"""
Centralized result and AnnData key schema for densiflux.

This module is intentionally small and declarative: it defines the canonical
column names of the long result tables, the test kinds, and the keys written
to .uns / .varm by the density pipeline.
"""

# -----------------------
# Test kinds
# -----------------------
TEST_DEVIANCE = "deviance"
TEST_WALD = "wald"
TEST_LR = "lr"
TEST_KINDS = (TEST_DEVIANCE, TEST_WALD, TEST_LR)

# -----------------------
# Long-format histogram table
# -----------------------
COL_GROUP = "GROUP"
COL_MIDPOINT = "MIDPOINT"
COL_COUNT = "COUNT"
COL_EXPOSURE = "EXPOSURE"

# -----------------------
# Result tables
# -----------------------
COL_FEATURE = "FEATURE_ID"
COL_MODEL = "MODEL"
COL_TEST = "TEST"
COL_STATISTIC = "STATISTIC"
COL_DF = "DF"
COL_PVALUE = "PVALUE"
COL_QVALUE = "QVALUE"
COL_SIGNIFICANT = "SIGNIFICANT"
COL_NOTE = "NOTE"

COL_STATUS = "STATUS"
COL_REASON = "REASON"
COL_LLF = "LLF"
COL_DEVIANCE = "DEVIANCE"
COL_N_PARAMS = "N_PARAMS"

PVALUE_COLUMNS = [COL_FEATURE, COL_MODEL, COL_TEST, COL_STATISTIC, COL_DF, COL_PVALUE, COL_NOTE]
FIT_COLUMNS = [COL_FEATURE, COL_MODEL, COL_STATUS, COL_REASON, COL_LLF, COL_DEVIANCE, COL_N_PARAMS]
SKIPPED_COLUMNS = [COL_FEATURE, COL_REASON]

STATUS_OK = "ok"
STATUS_FAILED = "failed"

# -----------------------
# Reference (mixed-model) table after harmonization
# -----------------------
REF_PVALUE = "REF_PVALUE"
REF_ADJ_PVALUE = "REF_ADJ_PVALUE"

# -----------------------
# .uns / .varm
# -----------------------
UNS_DENSITY_COLUMNS = "density_columns"
UNS_DENSITY_THRESHOLD = "density_fdr_threshold"
UNS_DENSITY_FAILURES = "density_failures"
UNS_DENSITY_SKIPPED = "density_skipped"
UNS_DENSITY_CONFIG = "density_config"

VARM_DENSITY_P = "density_p"
VARM_DENSITY_Q = "density_q"
