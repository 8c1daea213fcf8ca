from __future__ import annotations

from collections.abc import Sequence
import logging

from reviewloop.observability import log_event
from reviewloop.session import SessionState, ToolModelState
from reviewloop.stalemate import StalemateDetector


LOGGER = logging.getLogger("reviewloop.rotation")


def model_matches(candidate: str, available: str) -> bool:
    left = candidate.strip().lower()
    right = available.strip().lower()
    if not left or not right:
        return False
    return left in right or right in left


class RotationStrategy:
    """Round-robin walk over every (tool, model) pair.

    Each tool keeps its own position, so coming back to a tool resumes at its
    next untried model. Indices are reset only once every tool has attempted
    its last model; that reset closes one rotation cycle for the stalemate
    detector.
    """

    def __init__(
        self,
        *,
        tool_models: Sequence[tuple[str, tuple[str, ...]]],
        max_models_per_tool_round: int,
        stalemate: StalemateDetector,
        pinned_model: str | None = None,
    ) -> None:
        if max_models_per_tool_round < 1:
            raise ValueError("max_models_per_tool_round must be >= 1")
        self._tool_models = tuple(tool_models)
        self._cap = max_models_per_tool_round
        self._stalemate = stalemate
        self._pinned_model = pinned_model

    @property
    def tool_names(self) -> tuple[str, ...]:
        return tuple(name for name, _models in self._tool_models)

    def models_for(self, tool: str) -> tuple[str, ...]:
        for name, models in self._tool_models:
            if name == tool:
                return models
        return ()

    def attach(self, state: SessionState) -> None:
        for name in self.tool_names:
            tool_state = state.tool_state(name)
            limit = self._model_count(name)
            if tool_state.model_index >= limit:
                tool_state.model_index = 0
            if tool_state.attempted_index >= limit:
                tool_state.attempted_index = limit - 1
        if not self._tool_models or state.runner_index >= len(self._tool_models):
            state.set_runner_index(0)

    def current_tool(self, state: SessionState) -> str:
        if not self._tool_models:
            raise RuntimeError("No editing tools are available")
        return self._tool_models[state.runner_index][0]

    def current_model(self, state: SessionState) -> str | None:
        if self._pinned_model is not None:
            return self._pinned_model
        recommended = state.current_recommendation()
        if recommended is not None:
            return recommended
        tool = self.current_tool(state)
        models = self.models_for(tool)
        if not models:
            return None
        index = min(state.tool_state(tool).model_index, len(models) - 1)
        return models[index]

    def apply_recommendations(
        self, state: SessionState, recommended: Sequence[str], *, reasoning: str
    ) -> tuple[str, ...]:
        """Keep only recommended models the current tool can run, in recommended order."""
        available = self.models_for(self.current_tool(state))
        usable: list[str] = []
        for candidate in recommended:
            for model in available:
                if model_matches(candidate, model) and model not in usable:
                    usable.append(model)
                    break
        if usable:
            state.set_recommendations(usable, reasoning=reasoning)
            log_event(
                LOGGER,
                "rotation_recommendations_applied",
                tool=self.current_tool(state),
                models=",".join(usable),
            )
        else:
            state.clear_recommendations()
        return tuple(usable)

    def record_attempt(self, state: SessionState) -> None:
        tool = self.current_tool(state)
        tool_state = state.tool_state(tool)
        index = tool_state.model_index
        recommended = state.current_recommendation()
        if recommended is not None and recommended in self.models_for(tool):
            index = self.models_for(tool).index(recommended)
        tool_state.attempted_index = max(tool_state.attempted_index, index)

    def try_rotation(self, state: SessionState) -> bool:
        """Move to the next (tool, model) to try. False means the loop should bail out."""
        if not self._tool_models:
            return False

        if state.recommended_models:
            state.recommended_index += 1
            if state.current_recommendation() is not None:
                log_event(
                    LOGGER,
                    "rotation_next_recommended_model",
                    tool=self.current_tool(state),
                    model=state.current_recommendation(),
                )
                return True
            log_event(LOGGER, "rotation_recommendations_exhausted")
            state.clear_recommendations()

        counters = state.counters
        tool = self.current_tool(state)
        tool_state = state.tool_state(tool)
        next_index = max(tool_state.model_index, tool_state.attempted_index) + 1
        if counters.models_tried_this_tool_round < self._cap and next_index < self._model_count(
            tool
        ):
            tool_state.model_index = next_index
            counters.models_tried_this_tool_round += 1
            log_event(
                LOGGER,
                "rotation_next_model",
                tool=tool,
                model=self.current_model(state),
                models_tried_this_tool_round=counters.models_tried_this_tool_round,
            )
            return True

        tool_count = len(self._tool_models)
        for offset in range(1, tool_count + 1):
            candidate_index = (state.runner_index + offset) % tool_count
            candidate = self._tool_models[candidate_index][0]
            candidate_state = state.tool_state(candidate)
            if not self._has_untried_model(candidate_state):
                continue
            candidate_state.model_index = candidate_state.attempted_index + 1
            state.set_runner_index(candidate_index)
            counters.models_tried_this_tool_round = 1
            log_event(
                LOGGER,
                "rotation_switched_tool",
                previous_tool=tool,
                tool=candidate,
                model=self.current_model(state),
            )
            return True

        if self._stalemate.complete_cycle(state):
            return False
        self.start_fresh_round(state)
        return True

    def start_fresh_round(self, state: SessionState) -> None:
        for name in self.tool_names:
            tool_state = state.tool_state(name)
            tool_state.model_index = 0
            tool_state.attempted_index = -1
        state.set_runner_index(0)
        state.counters.models_tried_this_tool_round = 1
        state.counters.model_failures_in_cycle = 0
        log_event(
            LOGGER,
            "rotation_fresh_round",
            tool=self.current_tool(state),
            model=self.current_model(state),
        )

    def _has_untried_model(self, tool_state: ToolModelState) -> bool:
        return tool_state.attempted_index < self._model_count(tool_state.tool) - 1

    def _model_count(self, tool: str) -> int:
        return max(1, len(self.models_for(tool)))
