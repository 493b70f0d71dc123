"""Result parsing and plan repair."""

from waypoint.parsing.result_parser import ParseOutcome, ensure_plan_consistency, parse_plan

__all__ = ["ParseOutcome", "parse_plan", "ensure_plan_consistency"]
