"""Handler registry mapping step kinds to implementations."""

from __future__ import annotations

from replayengine.actions import BaseAction
from replayengine.actions.check import CheckAction
from replayengine.actions.click import ClickAction
from replayengine.actions.frame import FrameSwitchAction
from replayengine.actions.keypress import KeypressAction
from replayengine.actions.navigate import NavigateAction
from replayengine.actions.script import ScriptAction
from replayengine.actions.scroll import ScrollAction
from replayengine.actions.select_option import SelectAction
from replayengine.actions.tab import TabSwitchAction
from replayengine.actions.type import TypeAction
from replayengine.actions.upload import UploadAction
from replayengine.actions.wait import WaitAction
from replayengine.exceptions import UnsupportedStepKind
from replayengine.models import StepKind

ACTION_REGISTRY: dict[StepKind, type[BaseAction]] = {
    StepKind.NAVIGATE: NavigateAction,
    StepKind.CLICK: ClickAction,
    StepKind.TYPE: TypeAction,
    StepKind.SELECT: SelectAction,
    StepKind.CHECK: CheckAction,
    StepKind.KEYPRESS: KeypressAction,
    StepKind.SCROLL: ScrollAction,
    StepKind.FRAME_SWITCH: FrameSwitchAction,
    StepKind.TAB_SWITCH: TabSwitchAction,
    StepKind.WAIT: WaitAction,
    StepKind.UPLOAD: UploadAction,
    StepKind.SCRIPT: ScriptAction,
}


def get_action(kind: StepKind | str, step_index: int | None = None) -> BaseAction:
    """Get a handler instance for the given step kind."""
    try:
        key = StepKind(kind)
    except ValueError:
        raise UnsupportedStepKind(str(kind), step_index) from None
    action_cls = ACTION_REGISTRY.get(key)
    if action_cls is None:
        raise UnsupportedStepKind(key.value, step_index)
    return action_cls()
