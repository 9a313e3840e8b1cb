"""
Workflow definition parser
"""
import yaml
import json
from typing import Dict, Any, List, Union
from pathlib import Path

from ..models.workflow import (
    Workflow, WorkflowGraph, Step, StepKind, Delay, DelayUnit, STEP_CLASSES
)
from ..exceptions import WorkflowParseError, ValidationError


class WorkflowParser:
    """Workflow parser

    Accepts YAML, JSON or a dict. Steps may use either the short keys
    (``order``, ``type``, ``delay: {value, unit}``) or the flat column names
    used by the database export (``step_order``, ``step_type``,
    ``delay_value``, ``delay_unit``, ``true_next_step`` ...).
    """

    def __init__(self):
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }

    def parse(self, source: Union[str, Path, Dict[str, Any]]) -> Workflow:
        """
        Parse a workflow definition

        Args:
            source: file path, YAML/JSON string or dict

        Returns:
            Workflow: parsed workflow
        """
        if isinstance(source, dict):
            return self._parse_dict(source)

        if isinstance(source, (str, Path)):
            path = Path(source)
            try:
                is_file = path.exists() and path.is_file()
            except OSError:
                is_file = False
            if is_file:
                return self.parse_file(path)
            return self.parse_string(str(source))

        raise WorkflowParseError(f"Unsupported source type: {type(source)}")

    def parse_file(self, file_path: Path) -> Workflow:
        """Parse a workflow file"""
        file_path = Path(file_path)
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise WorkflowParseError(f"Unsupported file format: {suffix}")

        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        data = self.parsers[suffix](content)
        return self._parse_dict(data)

    def parse_string(self, content: str) -> Workflow:
        """Parse a workflow string, YAML first then JSON"""
        # JSON is a subset of YAML, so a YAML failure is final
        data = self._parse_yaml(content)
        if not isinstance(data, dict):
            raise WorkflowParseError("Failed to parse workflow string as YAML or JSON")
        return self._parse_dict(data)

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        try:
            return yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Failed to parse YAML: {e}")

    def _parse_json(self, content: str) -> Dict[str, Any]:
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Failed to parse JSON: {e}")

    def _parse_dict(self, data: Dict[str, Any]) -> Workflow:
        """Build a Workflow from its dict form"""
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow definition must be a mapping")
        if 'workflow' in data:
            data = data['workflow']

        if not data.get('name'):
            raise ValidationError("Workflow name is required")

        steps = [self.parse_step(step_data) for step_data in data.get('steps') or []]
        try:
            graph = WorkflowGraph(steps)
        except ValueError as e:
            raise ValidationError(str(e))

        errors = graph.validate()
        if errors:
            raise ValidationError(f"Workflow validation failed: {errors}", {"errors": errors})

        kwargs = dict(
            name=data['name'],
            description=data.get('description'),
            is_active=bool(data.get('is_active', True)),
            trigger_type=data.get('trigger_type', 'manual'),
            trigger_value=data.get('trigger_value'),
            graph=graph,
            metadata=data.get('metadata') or {}
        )
        if data.get('id'):
            kwargs['id'] = str(data['id'])
        return Workflow(**kwargs)

    def parse_step(self, data: Dict[str, Any]) -> Step:
        """Build one step from either key style"""
        if not isinstance(data, dict):
            raise WorkflowParseError(f"Step definition must be a mapping, got {type(data).__name__}")

        raw_kind = data.get('type', data.get('step_type'))
        try:
            kind = StepKind(raw_kind)
        except ValueError:
            raise ValidationError(f"Unknown step type: {raw_kind}")

        order = data.get('order', data.get('step_order'))
        common = {
            'order': order,
            'name': data.get('name') or '',
            'delay': self._parse_delay(data),
        }
        if data.get('id'):
            common['id'] = str(data['id'])

        if kind == StepKind.EMAIL:
            specific = {
                'subject': data.get('subject') or '',
                'body': data.get('body') or '',
            }
        elif kind == StepKind.CONDITION:
            specific = {
                'condition_field': data.get('field', data.get('condition_field')) or '',
                'condition_operator': data.get('operator', data.get('condition_operator')) or '',
                'condition_value': self._as_text(data.get('value', data.get('condition_value'))),
                'true_next': data.get('true_next', data.get('true_next_step')),
                'false_next': data.get('false_next', data.get('false_next_step')),
            }
        elif kind == StepKind.ACTION:
            specific = {
                'action_type': data.get('action_type'),
                'action_params': data.get('action_params') or data.get('params') or {},
            }
        else:
            specific = {}

        try:
            return STEP_CLASSES[kind](**common, **specific)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid {kind.value} step: {e}", {"step": data})

    def _parse_delay(self, data: Dict[str, Any]):
        delay = data.get('delay')
        if isinstance(delay, dict):
            value, unit = delay.get('value', 0), delay.get('unit')
        else:
            value, unit = data.get('delay_value', 0), data.get('delay_unit')
        try:
            value = float(value or 0)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid delay value: {value!r}")
        if value == 0 and unit is None:
            return None
        try:
            return Delay(value=value, unit=DelayUnit.parse(unit))
        except ValueError as e:
            raise ValidationError(str(e))

    @staticmethod
    def _as_text(value: Any):
        if value is None:
            return None
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def dump(self, workflow: Workflow) -> Dict[str, Any]:
        """Dict form of a workflow, accepted back by `parse`"""
        return {
            'id': workflow.id,
            'name': workflow.name,
            'description': workflow.description,
            'is_active': workflow.is_active,
            'trigger_type': workflow.trigger_type,
            'trigger_value': workflow.trigger_value,
            'metadata': workflow.metadata,
            'steps': [self.dump_step(step) for step in workflow.graph],
        }

    def dump_step(self, step: Step) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'id': step.id,
            'order': step.order,
            'type': step.kind.value,
            'name': step.name,
        }
        if step.delay is not None:
            data['delay'] = {'value': step.delay.value, 'unit': step.delay.unit.value}
        if step.kind == StepKind.EMAIL:
            data.update(subject=step.subject, body=step.body)
        elif step.kind == StepKind.CONDITION:
            data.update(
                field=step.condition_field,
                operator=step.condition_operator,
                value=step.condition_value,
                true_next=step.true_next,
                false_next=step.false_next
            )
        elif step.kind == StepKind.ACTION:
            data.update(action_type=step.action_type, action_params=dict(step.action_params))
        return data


def parse_steps(steps: List[Dict[str, Any]]) -> WorkflowGraph:
    """Convenience: build a graph from step dicts"""
    parser = WorkflowParser()
    return WorkflowGraph([parser.parse_step(s) for s in steps])
