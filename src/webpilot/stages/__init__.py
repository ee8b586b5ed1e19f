from webpilot.stages.analyzer import ErrorAnalysisStage, fallback_report
from webpilot.stages.base import Stage
from webpilot.stages.evaluator import Evaluation, EvaluationStage
from webpilot.stages.executor import ExecutionStage
from webpilot.stages.planner import PlanningStage
from webpilot.stages.summarizer import SummarizationStage

__all__ = [
    "ErrorAnalysisStage",
    "Evaluation",
    "EvaluationStage",
    "ExecutionStage",
    "PlanningStage",
    "Stage",
    "SummarizationStage",
    "fallback_report",
]
