"""Resonance Service

Wires the selection engine, feedback fusion, weight updater and harmonizer to
the stores and exposes the three operations the HTTP routes and scripts call:
``select_candidate``, ``submit_feedback`` and ``run_harmonization_cycle``.
"""

import logging
import datetime
from typing import Any, Dict, List, Optional, Sequence

from resonance_loop.errors import ConcurrencyConflict, NotFoundError, ResonanceError
from resonance_loop.personalization.fusion import (
    fuse_feedback, validate_self_report, validate_behavioral_metrics, validate_biometric_signals,
)
from resonance_loop.personalization.harmonizer import Harmonizer
from resonance_loop.personalization.models import SelectionEvent, FeedbackRecord, create_session, _utcnow
from resonance_loop.personalization.selector import SelectionEngine
from resonance_loop.personalization.signals import BiometricSample, detect_anomaly
from resonance_loop.personalization.weights import WeightUpdater
from resonance_loop.services.candidate_store import CandidateRepository
from resonance_loop.services.event_log import EventLog
from resonance_loop.services.state_service import EngineState, engine_state
from resonance_loop.services.user_state import UserStateStore
from resonance_loop.utils.embedding import EmbeddingService

logger = logging.getLogger(__name__)

RESONANCE_DELTA_SCALE = 0.1


class ResonanceService:
    """Entry point for selection, feedback and harmonization."""

    def __init__(self, session_factory=None, state: Optional[EngineState] = None,
                 embedding_service: Optional[EmbeddingService] = None, rng=None, clock=None):
        self.Session = session_factory or create_session()
        self.state = state or engine_state
        self.repository = CandidateRepository(self.Session)
        self.event_log = EventLog(self.Session)
        self.user_states = UserStateStore(self.Session, self.event_log)
        self.embeddings = embedding_service or EmbeddingService.from_config(self.state.config)
        self.rng = rng
        self.clock = clock or _utcnow

    # Components are rebuilt per call so config updates apply immediately

    @property
    def config(self) -> Dict[str, Any]:
        return self.state.config

    def _engine(self) -> SelectionEngine:
        return SelectionEngine.from_config(self.config, rng=self.rng)

    def _updater(self) -> WeightUpdater:
        return WeightUpdater(self.repository, base_eta=self.config['base_eta'],
                             max_attempts=self.config['cas_max_attempts'])

    def _harmonizer(self) -> Harmonizer:
        return Harmonizer(
            self.Session,
            self.repository,
            self.event_log,
            window=self.config['harmonization_window'],
            interval=datetime.timedelta(hours=self.config['harmonization_interval_hours']),
            thresholds={'elevated': self.config['elevated_threshold'],
                        'critical': self.config['critical_threshold']},
            max_attempts=self.config['cas_max_attempts'],
            clock=self.clock,
        )

    def reload_embeddings(self):
        self.embeddings = EmbeddingService.from_config(self.config)

    def _append(self, record) -> bool:
        stored = self.event_log.append(record)
        if not stored:
            self.state.update_analytics('event_log_failures')
        return stored

    def select_candidate(self, user_id: str, intent_tag: Optional[str] = None,
                         text_signal: Optional[str] = None, emotion_hint: Optional[str] = None) -> Dict[str, Any]:
        """Pick one candidate for the user and record the selection.

        Raises:
            NotFoundError: Unknown user state or no applicable candidates
            ConcurrencyConflict: Fatigue update kept conflicting
        """
        try:
            user = self.user_states.get(user_id)
            resonance = self.user_states.current_resonance(user)
            candidates = self.repository.find_applicable(user.state_tag)
            if not candidates:
                raise NotFoundError(f"No candidates available for state {user.state_tag!r}")

            user_vec = None
            if self.embeddings.enabled:
                user_vec = self.embeddings.try_embed(user.describe(text_signal, emotion_hint))
                if user_vec is None:
                    self.state.update_analytics('degraded_embeddings')

            result = self._engine().select(candidates, resonance, user.state_tag, user_vec)
            selected = result.selected
            fatigue = self._updater().increment_fatigue(selected.candidate.id)
        except ConcurrencyConflict:
            self.state.update_analytics('concurrency_conflicts')
            raise
        except ResonanceError:
            self.state.update_analytics('error_count')
            raise

        logged = self._append(SelectionEvent(
            user_id=user_id,
            candidate_id=selected.candidate.id,
            resonance=resonance,
            state_tag=user.state_tag,
            profile_id=user.profile_id,
            intent=intent_tag,
            score=selected.score,
            created_at=self.clock(),
        ))
        self.state.update_analytics('selections')

        return {
            'candidate_id': selected.candidate.id,
            'candidate_name': selected.candidate.name,
            'resonance': resonance,
            'state_tag': user.state_tag,
            'outcome_payload': selected.candidate.outcome_payload,
            'reasoning': result.reasoning,
            'score': selected.score,
            'probability': selected.probability,
            'components': selected.components,
            'fatigue_score': fatigue,
            'vectorized': result.vectorized,
            'alternatives': [
                {'candidate_id': a.candidate.id, 'score': a.score, 'probability': a.probability}
                for a in result.alternatives
            ],
            'event_logged': logged,
        }

    def _biometric_history(self, user_id: str) -> List[BiometricSample]:
        history = []
        for record in reversed(self.event_log.feedback_for(user_id, limit=10)):
            for raw in (record.signals or {}).get('biometric') or []:
                try:
                    history.extend(validate_biometric_signals([raw]))
                except ResonanceError:
                    continue
        return history

    def _flag_anomalies(self, user_id: str, samples: Sequence[BiometricSample]) -> List[str]:
        if not samples:
            return []
        history = self._biometric_history(user_id)
        flagged = []
        for sample in samples:
            if detect_anomaly(sample, history):
                logger.warning(f"Anomalous {sample.kind} sample from {user_id}: {sample.value}")
                flagged.append(sample.kind)
            history.append(sample)
        return flagged

    def submit_feedback(self, user_id: str, candidate_id: str, self_report,
                        behavioral_metrics: Optional[Dict[str, Any]] = None,
                        biometric_signals: Optional[Sequence[Any]] = None) -> Dict[str, Any]:
        """Fuse feedback signals and move the candidate's learning weight.

        Raises:
            ValidationError: self_report outside [-1, 1] or malformed signals
            NotFoundError: Unknown candidate
            ConcurrencyConflict: Weight update kept conflicting
        """
        try:
            self_report = validate_self_report(self_report)
            metrics = validate_behavioral_metrics(behavioral_metrics)
            samples = validate_biometric_signals(biometric_signals)
            self.repository.get(candidate_id)

            fusion = fuse_feedback(self_report, metrics, samples,
                                   self_report_floor=self.config['self_report_floor'])
            anomalies = self._flag_anomalies(user_id, samples)
            update = self._updater().apply_feedback(candidate_id, fusion.composite, fusion.confidence)
        except ConcurrencyConflict:
            self.state.update_analytics('concurrency_conflicts')
            raise
        except ResonanceError:
            self.state.update_analytics('error_count')
            raise

        resonance_delta = fusion.composite * RESONANCE_DELTA_SCALE
        harmonization_recommended = fusion.composite < self.config['negative_feedback_threshold']
        if harmonization_recommended:
            logger.warning(
                f"Negative feedback trajectory for {user_id} on {candidate_id} "
                f"(fulfillment={fusion.composite:.3f}); weight stabilization recommended"
            )

        logged = self._append(FeedbackRecord(
            user_id=user_id,
            candidate_id=candidate_id,
            signals={
                'self_report': self_report,
                'behavioral': metrics,
                'biometric': [
                    {'kind': s.kind, 'value': s.value, 'confidence': s.confidence, 'timestamp': s.timestamp}
                    for s in samples
                ],
                'fusion': fusion.to_dict(),
            },
            fulfillment_score=fusion.composite,
            confidence=fusion.confidence,
            weight_delta=update.delta,
            resonance_delta=resonance_delta,
            created_at=self.clock(),
        ))
        self.state.update_analytics('feedback_submissions')

        return {
            'candidate_id': candidate_id,
            'fulfillment_score': fusion.composite,
            'confidence': fusion.confidence,
            'new_weight': update.new_weight,
            'weight_delta': update.delta,
            'adaptive_eta': update.adaptive_eta,
            'resonance_delta': resonance_delta,
            'modalities': fusion.modalities,
            'anomalous_signals': anomalies,
            'harmonization_recommended': harmonization_recommended,
            'event_logged': logged,
        }

    def run_harmonization_cycle(self, user_id: str, force: bool = False) -> Dict[str, Any]:
        """Run a guarded harmonization cycle for one user."""
        try:
            report = self._harmonizer().run_cycle(user_id, force=bool(force))
        except ConcurrencyConflict:
            self.state.update_analytics('concurrency_conflicts')
            raise
        except ResonanceError:
            self.state.update_analytics('error_count')
            raise

        if report.status == 'not_due':
            self.state.update_analytics('harmonization_skipped')
        else:
            self.state.update_analytics('harmonization_runs')
        return report.to_dict()

    def harmonization_status(self, user_id: str) -> Dict[str, Any]:
        """Current entropy and guard state without executing anything."""
        harmonizer = self._harmonizer()
        next_check = harmonizer.next_due(user_id)
        return {
            'user_id': user_id,
            'entropy': harmonizer.evaluate(user_id).to_dict(),
            'due': next_check is None,
            'next_check': next_check.isoformat() if next_check else None,
        }
