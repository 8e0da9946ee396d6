"""Sales pipeline core -- stage catalog, transitions, board and reports.

Provides SQLAlchemy models (StageMeta, Company, Contact, Deal,
DealStageHistory, Activity), Pydantic schemas for board and report views,
StageTransitionService for audited stage moves, PipelineAggregator for the
board, ReportEngine for totals/forecast/velocity, and PipelineRepository for
async persistence.
"""
