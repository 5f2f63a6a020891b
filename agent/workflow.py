"""
Workflow Engine — Máquina de estados de los flujos guiados MNP.

Los workflows (roadmap / step_by_step) se definen en
`knowledge/workflows.json` y se cargan una sola vez con
`WorkflowRegistry.from_file()`. El progreso de cada sesión vive en la
tabla `scenario_progress` y se muta bajo un lock por sesión.
"""

import asyncio
import json
import logging
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from agent.db_service import DBService
from agent.errors import Conflict, NotFound, ValidationError
from agent.models import (
    ProgressRecord,
    StepCondition,
    StepDefinition,
    WorkflowDefinition,
)

logger = logging.getLogger(__name__)


# Validadores con nombre (referenciados por reglas "custom")

CUSTOM_VALIDATORS: Dict[str, Callable[[str], bool]] = {
    "reservation_number": lambda value: re.fullmatch(r"[0-9]{10}", value) is not None,
    "phone_number": lambda value: re.fullmatch(r"0[789]0[0-9]{8}", value) is not None,
}


# Condiciones


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_condition(condition: StepCondition, data: Dict[str, Any]) -> bool:
    """Evalúa una condición contra los datos recolectados. Operador desconocido → False."""
    actual = data.get(condition.field)
    op = condition.operator

    if op == "equals":
        return actual == condition.value
    if op == "not_equals":
        return actual != condition.value
    if op == "contains":
        if actual is None:
            return False
        return str(condition.value) in str(actual)
    if op in ("greater_than", "less_than"):
        left, right = _to_float(actual), _to_float(condition.value)
        if left is None or right is None:
            return False
        return left > right if op == "greater_than" else left < right

    logger.warning(f"Operador de condición desconocido: {op}")
    return False


def validate_input(
    step: StepDefinition, user_input: Optional[str], selected_option: Optional[str]
) -> List[str]:
    """Devuelve los mensajes de las reglas que no se cumplen (vacío = válido)."""
    value = (user_input or "").strip()
    option = (selected_option or "").strip()
    errors = []

    for rule in step.validation:
        if rule.type == "required":
            if not value and not option:
                errors.append(rule.message)
        elif rule.type == "pattern":
            if value and rule.pattern and not re.search(rule.pattern, value):
                errors.append(rule.message)
        elif rule.type == "custom":
            validator = CUSTOM_VALIDATORS[rule.custom_validator]
            if value and not validator(value):
                errors.append(rule.message)

    return errors


# Registry


class WorkflowRegistry:
    """Definiciones de workflows, validadas al cargar."""

    def __init__(self, workflows: List[WorkflowDefinition]):
        self._workflows: Dict[str, WorkflowDefinition] = {}
        for workflow in workflows:
            self._check(workflow)
            self._workflows[workflow.id] = workflow
        logger.info(f"{len(self._workflows)} workflows cargados: {list(self._workflows)}")

    @classmethod
    def from_file(cls, path: Path) -> "WorkflowRegistry":
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        return cls([WorkflowDefinition.model_validate(w) for w in raw])

    @staticmethod
    def _check(workflow: WorkflowDefinition) -> None:
        """Falla si hay referencias a pasos o validadores inexistentes."""
        if not workflow.steps:
            raise ValueError(f"Workflow '{workflow.id}' no tiene pasos")

        ids = [s.id for s in workflow.steps]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Workflow '{workflow.id}' tiene ids de paso duplicados")

        known = set(ids)
        for step in workflow.steps:
            refs = [step.next_step]
            refs += [o.next_step for o in step.options]
            refs += [c.target for c in step.conditions if c.action == "branch"]
            for ref in refs:
                if ref is not None and ref not in known:
                    raise ValueError(
                        f"Workflow '{workflow.id}': paso '{step.id}' referencia "
                        f"un paso inexistente '{ref}'"
                    )
            for rule in step.validation:
                if rule.type == "pattern" and not rule.pattern:
                    raise ValueError(f"Regla pattern sin patrón en '{step.id}'")
                if rule.type == "custom" and rule.custom_validator not in CUSTOM_VALIDATORS:
                    raise ValueError(
                        f"Validador desconocido '{rule.custom_validator}' en '{step.id}'"
                    )

    def get(self, workflow_id: str) -> WorkflowDefinition:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise NotFound(f"Workflow no encontrado: {workflow_id}")
        return workflow

    def __contains__(self, workflow_id: str) -> bool:
        return workflow_id in self._workflows

    def all(self) -> List[WorkflowDefinition]:
        return list(self._workflows.values())


def find_step(workflow: WorkflowDefinition, step_id: str) -> StepDefinition:
    for step in workflow.steps:
        if step.id == step_id:
            return step
    raise NotFound(f"Paso '{step_id}' no existe en workflow '{workflow.id}'")


# Engine


class WorkflowEngine:
    """Avanza sesiones a través de los workflows y persiste su progreso."""

    def __init__(
        self,
        registry: WorkflowRegistry,
        db: DBService,
        default_workflow: str = "step_by_step",
    ):
        self.registry = registry
        self._db = db
        self.default_workflow = default_workflow
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    async def _load(self, session_id: str) -> Optional[ProgressRecord]:
        raw = await asyncio.to_thread(self._db.get_progress, session_id)
        return ProgressRecord.model_validate(raw) if raw else None

    async def _save(self, record: ProgressRecord) -> None:
        await asyncio.to_thread(self._db.upsert_progress, record.model_dump(mode="json"))

    # Operaciones

    async def start(
        self,
        session_id: str,
        workflow_id: Optional[str] = None,
        initial_data: Optional[Dict[str, Any]] = None,
    ) -> Tuple[StepDefinition, ProgressRecord]:
        """Inicia (o reinicia) el workflow de la sesión en su primer paso."""
        async with self._lock(session_id):
            return await self._start(session_id, workflow_id, initial_data)

    async def _start(self, session_id, workflow_id, initial_data):
        workflow = self.registry.get(workflow_id or self.default_workflow)
        first = workflow.steps[0]
        now = datetime.now()
        record = ProgressRecord(
            session_id=session_id,
            workflow_id=workflow.id,
            current_step=first.id,
            completed_steps=[],
            collected_data=dict(initial_data or {}),
            progress=0,
            completed=False,
            estimated_completion=now
            + timedelta(minutes=workflow.metadata.estimated_duration),
            last_updated=now,
        )
        await self._save(record)
        logger.info(f"[{session_id}] workflow '{workflow.id}' iniciado en '{first.id}'")
        return first, record

    async def advance(
        self,
        session_id: str,
        current_step_id: str,
        user_input: Optional[str] = None,
        selected_option: Optional[str] = None,
    ) -> Tuple[Optional[StepDefinition], ProgressRecord, bool]:
        """
        Valida el input del paso actual y mueve la sesión al siguiente paso.

        Returns:
            (siguiente paso o None, progreso, completado)

        Raises:
            NotFound: la sesión no tiene progreso
            Conflict: current_step_id no coincide con el paso actual
            ValidationError: el input no cumple las reglas (sin cambios de estado)
        """
        async with self._lock(session_id):
            record = await self._require(session_id)
            if record.completed:
                return None, record, True
            if record.current_step != current_step_id:
                raise Conflict(
                    f"Paso '{current_step_id}' no es el actual ({record.current_step})"
                )

            workflow = self.registry.get(record.workflow_id)
            step = find_step(workflow, current_step_id)

            errors = validate_input(step, user_input, selected_option)
            if errors:
                raise ValidationError("; ".join(errors), messages=errors)

            data = dict(record.collected_data)
            data[step.id] = user_input
            data[f"{step.id}_option"] = selected_option

            next_id = self._resolve_next(step, selected_option, data)
            return await self._move(record, workflow, step, next_id, data)

    async def skip(
        self, session_id: str, reason: Optional[str] = None
    ) -> Tuple[Optional[StepDefinition], ProgressRecord, bool]:
        """Salta el paso actual sin validar."""
        async with self._lock(session_id):
            record = await self._require(session_id)
            if record.completed or record.current_step is None:
                return None, record, True

            workflow = self.registry.get(record.workflow_id)
            step = find_step(workflow, record.current_step)

            data = dict(record.collected_data)
            data[f"{step.id}_skipped"] = True
            data[f"{step.id}_skip_reason"] = reason

            next_id = self._resolve_next(step, None, data)
            logger.info(f"[{session_id}] paso '{step.id}' saltado ({reason})")
            return await self._move(record, workflow, step, next_id, data)

    async def current(
        self, session_id: str
    ) -> Optional[Tuple[Optional[StepDefinition], ProgressRecord]]:
        """Paso actual y progreso, o None si la sesión no está en un workflow."""
        record = await self._load(session_id)
        if record is None:
            return None
        if record.current_step is None:
            return None, record
        workflow = self.registry.get(record.workflow_id)
        return find_step(workflow, record.current_step), record

    async def reset(
        self,
        session_id: str,
        workflow_id: Optional[str] = None,
        initial_data: Optional[Dict[str, Any]] = None,
    ) -> Tuple[StepDefinition, ProgressRecord]:
        """Descarta el progreso y vuelve a empezar."""
        async with self._lock(session_id):
            existing = await self._load(session_id)
            if workflow_id is None and existing is not None:
                workflow_id = existing.workflow_id
            await asyncio.to_thread(self._db.delete_progress, session_id)
            return await self._start(session_id, workflow_id, initial_data)

    async def end(self, session_id: str) -> bool:
        """Cancela el workflow de la sesión. False si no había ninguno."""
        async with self._lock(session_id):
            removed = await asyncio.to_thread(self._db.delete_progress, session_id)
        if removed:
            logger.info(f"[{session_id}] workflow cancelado")
        return removed

    def available(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": w.id,
                "name": w.name,
                "description": w.description,
                "mode": w.mode,
                "steps": len(w.steps),
                "estimated_duration": w.metadata.estimated_duration,
            }
            for w in self.registry.all()
        ]

    # Internos

    async def _require(self, session_id: str) -> ProgressRecord:
        record = await self._load(session_id)
        if record is None:
            raise NotFound(f"Sesión sin workflow activo: {session_id}")
        return record

    @staticmethod
    def _resolve_next(
        step: StepDefinition, selected_option: Optional[str], data: Dict[str, Any]
    ) -> Optional[str]:
        """Opción elegida > primera condición branch verdadera > next_step."""
        if selected_option:
            for option in step.options:
                if selected_option in (option.value, option.id) and option.next_step:
                    return option.next_step

        for condition in step.conditions:
            # skip / require no deciden el siguiente paso
            if condition.action != "branch":
                continue
            if evaluate_condition(condition, data):
                return condition.target

        return step.next_step

    async def _move(
        self,
        record: ProgressRecord,
        workflow: WorkflowDefinition,
        step: StepDefinition,
        next_id: Optional[str],
        data: Dict[str, Any],
    ) -> Tuple[Optional[StepDefinition], ProgressRecord, bool]:
        now = datetime.now()
        completed_steps = list(record.completed_steps)
        if step.id not in completed_steps:
            completed_steps.append(step.id)

        next_step = find_step(workflow, next_id) if next_id else None

        # Pasos de otro carrier se pasan de largo
        carrier = data.get("current_carrier")
        seen = set()
        while (
            next_step is not None
            and carrier
            and next_step.carrier_specific
            and carrier not in next_step.carrier_specific
        ):
            if next_step.id in seen:
                next_step = None
                break
            seen.add(next_step.id)
            data[f"{next_step.id}_skipped"] = True
            data[f"{next_step.id}_skip_reason"] = "carrier_mismatch"
            if next_step.id not in completed_steps:
                completed_steps.append(next_step.id)
            next_step = (
                find_step(workflow, next_step.next_step) if next_step.next_step else None
            )

        if next_step is None:
            updated = record.model_copy(
                update={
                    "current_step": None,
                    "completed_steps": completed_steps,
                    "collected_data": data,
                    "progress": 100,
                    "completed": True,
                    "estimated_completion": now,
                    "last_updated": now,
                }
            )
            await self._save(updated)
            logger.info(f"[{record.session_id}] workflow '{workflow.id}' completado")
            return None, updated, True

        # Volver a un paso ya completado lo saca de completed_steps
        completed_steps = [s for s in completed_steps if s != next_step.id]

        if next_step.type == "completion":
            progress, completed = 100, True
            remaining = 0
        else:
            total = len(workflow.steps)
            progress = min(100, round(len(completed_steps) / total * 100))
            progress = max(record.progress, progress)
            completed = False
            remaining = self._remaining_minutes(workflow, next_step)

        updated = record.model_copy(
            update={
                "current_step": next_step.id,
                "completed_steps": completed_steps,
                "collected_data": data,
                "progress": progress,
                "completed": completed,
                "estimated_completion": now + timedelta(minutes=remaining),
                "last_updated": now,
            }
        )
        await self._save(updated)
        logger.info(
            f"[{record.session_id}] {step.id} → {next_step.id} ({progress}%)"
        )
        return next_step, updated, completed

    @staticmethod
    def _remaining_minutes(workflow: WorkflowDefinition, start: StepDefinition) -> int:
        """Suma estimated_time siguiendo la cadena de next_step desde `start`."""
        total, seen, step = 0, set(), start
        while step is not None and step.id not in seen:
            seen.add(step.id)
            total += step.estimated_time or 0
            step = find_step(workflow, step.next_step) if step.next_step else None
        return total
