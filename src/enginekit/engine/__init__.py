"""llama.cpp processes: the throughput benchmark and the inference service."""

from .benchmark import BenchmarkRunner, offload_layers, parse_bench_output
from .recommend import QuickRecommendation, fallback_ladder, recommend_from_profile
from .service import ServiceController

__all__ = [
    "BenchmarkRunner",
    "offload_layers",
    "parse_bench_output",
    "QuickRecommendation",
    "fallback_ladder",
    "recommend_from_profile",
    "ServiceController",
]
