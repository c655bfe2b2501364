from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, List, Optional

from core.errors import Forbidden, NotFound

PLAN_RANK = {"free": 0, "creator": 1, "pro": 2}

RESOLUTIONS = ("480p", "720p", "1080p", "4K")

RESOLUTION_MIN_PLAN = {
    "480p": "free",
    "720p": "free",
    "1080p": "creator",
    "4K": "pro",
}


@dataclass(frozen=True)
class VideoModel:
    id: str
    name: str
    default_cost_per_second: Decimal
    resolutions: tuple[str, ...]
    default_resolution: str
    description: str = ""
    is_active: bool = True
    min_plan: str = "free"


DEFAULT_MODELS = (
    VideoModel(
        id="luma/ray-2-720p",
        name="Luma Ray-2-720p",
        description="Fast, cost-effective video generation",
        default_cost_per_second=Decimal("0.18"),
        resolutions=("480p", "720p"),
        default_resolution="720p",
    ),
    VideoModel(
        id="google/veo-3",
        name="Google Veo-3",
        description="High-quality video generation",
        default_cost_per_second=Decimal("0.75"),
        resolutions=("720p", "1080p", "4K"),
        default_resolution="1080p",
        min_plan="creator",
    ),
)


def plan_allows(plan: str, required: str) -> bool:
    return PLAN_RANK.get(plan, 0) >= PLAN_RANK[required]


class ModelCatalog:
    def __init__(self, models: tuple[VideoModel, ...] = DEFAULT_MODELS) -> None:
        self._models: Dict[str, VideoModel] = {model.id: model for model in models}
        self._lock = threading.Lock()

    def get(self, model_ref: str) -> Optional[VideoModel]:
        with self._lock:
            return self._models.get(model_ref)

    def resolve(self, model_ref: str) -> VideoModel:
        model = self.get(model_ref)
        if not model or not model.is_active:
            raise NotFound(f"model {model_ref} not found or inactive", user_message="Model not available")
        return model

    def active_models(self) -> List[VideoModel]:
        with self._lock:
            return [model for model in self._models.values() if model.is_active]

    def set_active(self, model_ref: str, active: bool) -> VideoModel:
        with self._lock:
            model = self._models.get(model_ref)
            if not model:
                raise NotFound(f"model {model_ref} not found", user_message="Model not available")
            updated = replace(model, is_active=active)
            self._models[model_ref] = updated
            return updated

    def authorize(self, model_ref: str, plan: str, resolution: Optional[str]) -> tuple[VideoModel, str]:
        model = self.resolve(model_ref)
        if not plan_allows(plan, model.min_plan):
            raise Forbidden(
                f"model {model_ref} requires plan {model.min_plan}, caller has {plan}",
                user_message=f"{model.name} requires the {model.min_plan} plan or higher",
            )
        chosen = resolution or model.default_resolution
        if chosen not in model.resolutions:
            raise Forbidden(
                f"model {model_ref} does not support {chosen}",
                user_message=f"{model.name} does not support {chosen}",
            )
        required = RESOLUTION_MIN_PLAN.get(chosen, "pro")
        if not plan_allows(plan, required):
            raise Forbidden(
                f"resolution {chosen} requires plan {required}, caller has {plan}",
                user_message=f"{chosen} output requires the {required} plan or higher",
            )
        return model, chosen
