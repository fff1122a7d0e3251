"""
Three step wizard: hostname -> subject details -> result.

Transitions take a SessionState and return a new one; the caller persists it
through a session store before redirecting the browser.
"""

import os
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Optional, Tuple

from errors import ConfigurationError, InputError, InvalidTransition
from models import (
    STORAGE_KEYS,
    CAEnrollmentResult,
    GenerationResult,
    GenerationStatus,
    RunLog,
    SubjectProfile,
)
from hostconfig import sanitize_hostname
from utils_crt import atomic_write


class WizardStep(IntEnum):
    COLLECT_HOSTNAME = 1
    COLLECT_DETAILS = 2
    SHOW_RESULT = 3


class Action(str, Enum):
    # values are the submit button names of the wizard form
    ADVANCE = "next_step"
    RETREAT = "prev_step"
    SUBMIT = "generate_csr"
    RESET = "done_and_start_over"


CA_LOG_HEADER = "\n--- CA Certificate Request Log ---"
CA_SKIPPED_HEADER = "\n--- CA Certificate Request Log (Not Attempted) ---"
CA_SKIPPED_MESSAGE = "CA certificate request skipped because CSR generation failed or CSR content was empty."


def _truthy(value) -> bool:
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class SessionState:
    step: WizardStep = WizardStep.COLLECT_HOSTNAME
    form: Optional[dict] = None
    key_exists: bool = False
    submitted: Optional[SubjectProfile] = None
    force_new_key: bool = False
    generation: Optional[GenerationResult] = None
    enrollment: Optional[CAEnrollmentResult] = None
    overall_status: str = ""
    combined_log: str = ""
    artifacts: Tuple[str, ...] = field(default_factory=tuple)
    just_completed: bool = False

    @property
    def failed(self) -> bool:
        return self.overall_status == GenerationStatus.FAIL.value

    def to_dict(self) -> dict:
        return {
            "step": int(self.step),
            "form": dict(self.form) if self.form is not None else None,
            "key_exists": self.key_exists,
            "submitted": self.submitted.to_storage() if self.submitted else None,
            "force_new_key": self.force_new_key,
            "generation": self.generation.to_dict() if self.generation else None,
            "enrollment": self.enrollment.to_dict() if self.enrollment else None,
            "overall_status": self.overall_status,
            "combined_log": self.combined_log,
            "artifacts": list(self.artifacts),
            "just_completed": self.just_completed,
        }

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> "SessionState":
        if not d:
            return cls()
        return cls(
            step=WizardStep(int(d.get("step", 1))),
            form=d.get("form"),
            key_exists=bool(d.get("key_exists")),
            submitted=SubjectProfile.from_form(d["submitted"]) if d.get("submitted") else None,
            force_new_key=bool(d.get("force_new_key")),
            generation=GenerationResult.from_dict(d["generation"]) if d.get("generation") else None,
            enrollment=CAEnrollmentResult.from_dict(d["enrollment"]) if d.get("enrollment") else None,
            overall_status=d.get("overall_status", ""),
            combined_log=d.get("combined_log", ""),
            artifacts=tuple(d.get("artifacts") or ()),
            just_completed=bool(d.get("just_completed")),
        )


class Workflow:

    def __init__(self, host_store, key_manager, ca_client, cert_dir: str, defaults: Optional[dict] = None, clock=None):
        self.host_store = host_store
        self.key_manager = key_manager
        self.ca_client = ca_client
        self.cert_dir = cert_dir
        self.defaults = dict(defaults or {})
        self.clock = clock

    def _blank_form(self) -> dict:
        form = {k: "" for k in STORAGE_KEYS}
        for k, v in self.defaults.items():
            if k in form:
                form[k] = "" if v is None else str(v)
        return form

    @staticmethod
    def _require(state: SessionState, step: WizardStep, action: Action) -> None:
        if state.step != step:
            raise InvalidTransition(
                f"Action '{action.value}' is not available on step {int(state.step)}."
            )

    # ---------------- reads ----------------

    def on_read(self, state: SessionState) -> SessionState:
        """
        Plain page load. Right after a submit the one-shot marker keeps the
        result page; otherwise anything but an in-flight step 2 starts over.
        """
        if state.just_completed:
            return replace(state, just_completed=False)
        if state.step != WizardStep.COLLECT_DETAILS and state.form is None:
            return SessionState()
        return state

    def form_for_display(self, state: SessionState) -> dict:
        if state.form is not None:
            return dict(state.form)
        if state.submitted is not None:
            return state.submitted.to_storage()
        return self._blank_form()

    # ---------------- transitions ----------------

    def advance(self, state: SessionState, hostname: str) -> SessionState:
        self._require(state, WizardStep.COLLECT_HOSTNAME, Action.ADVANCE)
        hostname = sanitize_hostname(hostname)

        form = self._blank_form()
        stored = self.host_store.load(hostname)
        if stored is not None:
            form.update(stored.to_storage())
            print(f"[WIZARD] Loaded saved configuration for {hostname}")
        else:
            form["dns"] = ""
            form["ips"] = ""
        form["cn"] = hostname

        return SessionState(
            step=WizardStep.COLLECT_DETAILS,
            form=form,
            key_exists=self.key_manager.key_exists(hostname),
        )

    def retreat(self, state: SessionState) -> SessionState:
        self._require(state, WizardStep.COLLECT_DETAILS, Action.RETREAT)
        return SessionState()

    def with_form_input(self, state: SessionState, form_input: dict) -> SessionState:
        """Keep what the operator typed on step 2 (used when the input is rejected)."""
        if state.form is None:
            return state
        form = dict(state.form)
        for k in STORAGE_KEYS:
            if k != "cn" and k in form_input:
                form[k] = str(form_input.get(k) or "").strip()
        return replace(state, form=form)

    def submit(self, state: SessionState, form_input: dict) -> SessionState:
        self._require(state, WizardStep.COLLECT_DETAILS, Action.SUBMIT)
        # the hostname comes from the session, not from the posted form
        data = {k: form_input.get(k, "") for k in STORAGE_KEYS}
        data["cn"] = (state.form or {}).get("cn", "")
        profile = SubjectProfile.from_form(data)
        force_new_key = _truthy(form_input.get("force_new_key"))
        cn = profile.common_name

        try:
            self.host_store.save(profile)
        except ConfigurationError as e:
            log = RunLog(self.clock)
            log.error(str(e))
            generation = GenerationResult((), GenerationStatus.FAIL, log.text(), "")
        else:
            generation = self.key_manager.produce(profile, force_new_key)

        combined = RunLog(self.clock)
        combined.append_block(generation.log)
        artifacts = list(generation.artifacts)
        overall = generation.status

        if generation.ok and generation.csr_content:
            enrollment = self.ca_client.enroll(generation.csr_content, cn)
            combined.append_block(CA_LOG_HEADER)
            combined.append_block(enrollment.log)
            if not enrollment.ok:
                overall = GenerationStatus.FAIL
            else:
                crt_name = f"{cn}.crt"
                try:
                    atomic_write(os.path.join(self.cert_dir, crt_name), enrollment.certificate)
                except OSError as e:
                    combined.error(f"Could not save certificate {crt_name}: {e}")
                    overall = GenerationStatus.FAIL
                else:
                    artifacts.append(crt_name)
                    combined.add(f"Actual certificate fetched from CA and saved: {crt_name}")
        else:
            enrollment = CAEnrollmentResult.not_attempted(CA_SKIPPED_MESSAGE)
            combined.append_block(CA_SKIPPED_HEADER)
            combined.append_block(CA_SKIPPED_MESSAGE)
            overall = GenerationStatus.FAIL

        print(f"[WIZARD] Run for {cn} finished: {overall.value} (CA: {enrollment.status.value})")
        return SessionState(
            step=WizardStep.SHOW_RESULT,
            key_exists=state.key_exists,
            submitted=profile,
            force_new_key=force_new_key,
            generation=generation,
            enrollment=enrollment,
            overall_status=overall.value,
            combined_log=combined.text(),
            artifacts=tuple(artifacts),
            just_completed=True,
        )

    def reset(self, state: SessionState) -> SessionState:
        self._require(state, WizardStep.SHOW_RESULT, Action.RESET)
        if not state.failed:
            raise InvalidTransition("Start over is only offered after a failed run.")
        return SessionState()

    def apply_transition(self, state: SessionState, action: Action, form_input: Optional[dict] = None) -> SessionState:
        form_input = form_input or {}
        if action == Action.ADVANCE:
            return self.advance(state, form_input.get("cn", ""))
        if action == Action.RETREAT:
            return self.retreat(state)
        if action == Action.SUBMIT:
            return self.submit(state, form_input)
        if action == Action.RESET:
            return self.reset(state)
        raise InputError(f"Unknown action '{action}'.")
