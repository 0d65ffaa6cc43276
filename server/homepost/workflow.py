from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from homepost.broadcast import Broadcaster
from homepost.classifiers import Classification, Classifier, DetectedAlert
from homepost.protocol import AlertEvent, Message, Speak
from homepost.store import Store

DeviceSender = Callable[[str, Message], Awaitable[bool]]
SpeakerCheck = Callable[[str], bool]

ALERT_TYPE_KEYWORD = "keyword_detected"


@dataclass(slots=True)
class WorkflowState:
    device_id: str
    timestamp: str
    text: str
    tags: dict[str, str] = field(default_factory=dict)
    classification: Classification | None = None
    transcription_id: int | None = None
    alert_ids: list[int] = field(default_factory=list)

    @property
    def alerts(self) -> tuple[DetectedAlert, ...]:
        return self.classification.alerts if self.classification is not None else ()


Step = Callable[[WorkflowState], Awaitable[None]]


def alert_row_message(alert: DetectedAlert) -> str:
    return f'Detected "{alert.phrase}" ({alert.severity} severity)'


def speak_text(alert: DetectedAlert) -> str:
    return f"Alert detected: {alert.phrase}. Do you need assistance?"


class AlertWorkflow:
    """Tag, analyze and store one transcript.

    The step list is assembled once and shared by every chunk; the only
    per-run state lives in WorkflowState.
    """

    def __init__(
        self,
        *,
        classifier: Classifier,
        store: Store,
        broadcaster: Broadcaster,
        send_to_device: DeviceSender,
        has_speaker: SpeakerCheck,
    ) -> None:
        self._classifier = classifier
        self._store = store
        self._broadcaster = broadcaster
        self._send_to_device = send_to_device
        self._has_speaker = has_speaker
        self._logger = logging.getLogger("homepost.workflow")
        self._steps: tuple[tuple[str, Step], ...] = (
            ("tag", self._tag),
            ("analyze", self._analyze),
            ("store", self._store_results),
        )

    @property
    def step_names(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self._steps)

    async def invoke(self, device_id: str, text: str, timestamp: str) -> WorkflowState:
        state = WorkflowState(device_id=device_id, timestamp=timestamp, text=text)
        for name, step in self._steps:
            try:
                await step(state)
            except Exception:
                self._logger.exception("Workflow step %s failed for %s", name, device_id)
        return state

    async def _tag(self, state: WorkflowState) -> None:
        state.tags["deviceId"] = state.device_id

    async def _analyze(self, state: WorkflowState) -> None:
        if not state.text.strip():
            state.classification = Classification(alerts=())
            return
        state.classification = await self._classifier.classify(state.text, state.device_id)
        if state.alerts:
            self._logger.info(
                "Alerts for %s via %s: %s",
                state.device_id,
                state.classification.source,
                ", ".join(f"{a.phrase}/{a.severity}" for a in state.alerts),
            )

    async def _store_results(self, state: WorkflowState) -> None:
        if state.text.strip():
            try:
                state.transcription_id = await self._store.insert_transcription(
                    state.device_id, state.timestamp, state.text, 1.0
                )
            except Exception:
                self._logger.exception("Failed to store transcription for %s", state.device_id)

        for alert in state.alerts:
            try:
                alert_id = await self._store.insert_alert(
                    state.device_id, state.timestamp, ALERT_TYPE_KEYWORD, alert_row_message(alert), "new"
                )
                state.alert_ids.append(alert_id)
            except Exception:
                self._logger.exception("Failed to store alert %r for %s", alert.phrase, state.device_id)

            await self._broadcaster.broadcast(
                AlertEvent(
                    device_id=state.device_id,
                    timestamp=state.timestamp,
                    message=f'Detected "{alert.phrase}" in device {state.device_id}',
                    severity=alert.severity,
                )
            )

            if alert.severity == "high" and self._has_speaker(state.device_id):
                sent = await self._send_to_device(state.device_id, Speak(text=speak_text(alert)))
                if not sent:
                    self._logger.warning("Could not ask %s for assistance; device not ready", state.device_id)
