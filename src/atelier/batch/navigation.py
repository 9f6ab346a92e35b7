"""Camera viewpoints, yaw calibration and left/right mirror planning.

Right viewpoints with a left counterpart are never rendered: the left
render is reused with its yaw sign flipped and flagged ``is_mirrored``
(consumers flip the image horizontally).
"""

from __future__ import annotations

from dataclasses import dataclass, field

from atelier.models.domain import BatchTask

DEFAULT_YAW_CLAMP_DEG = 65.0


@dataclass(frozen=True)
class Viewpoint:
    """A camera viewpoint.

    Attributes:
        name: Angle id, e.g. ``left-30``.
        yaw_deg: Target subject yaw (negative = camera-left).
        prompt: Instruction fragment describing the view.
        mirror_of: Left viewpoint this right viewpoint mirrors, if any.
    """

    name: str
    yaw_deg: float
    prompt: str
    mirror_of: str | None = None


VIEWPOINTS: dict[str, Viewpoint] = {
    v.name: v
    for v in (
        Viewpoint(
            "front",
            0.0,
            "FRONT FACING (0 deg). Model faces directly forward. Symmetrical view. Both ears visible.",
        ),
        Viewpoint(
            "left-30",
            -30.0,
            "LOOKING LEFT (30 deg). Face and body turned slightly to the LEFT. "
            "Left ear visible. Nose points to the left side of the image.",
        ),
        Viewpoint(
            "left-40",
            -45.0,
            "LOOKING LEFT (45 deg). Face and body turned 45 degrees to the LEFT. "
            "Left ear clearly visible.",
        ),
        Viewpoint(
            "left-side",
            -90.0,
            "SIDE PROFILE (LEFT 90 deg). Full side view facing LEFT. Nose points strictly LEFT. "
            "Only the left ear visible.",
        ),
        Viewpoint(
            "right-30",
            30.0,
            "LOOKING RIGHT (30 deg). Body turned to the viewer-right. Right shoulder in the foreground.",
            mirror_of="left-30",
        ),
        Viewpoint(
            "right-40",
            45.0,
            "LOOKING RIGHT (45 deg). Strong diagonal to the viewer-right. Right shoulder closest to viewer.",
            mirror_of="left-40",
        ),
        Viewpoint(
            "right-side",
            90.0,
            "SIDE PROFILE (RIGHT 90 deg). Full side view facing RIGHT. Nose points strictly RIGHT.",
            mirror_of="left-side",
        ),
    )
}


@dataclass(frozen=True)
class RelativeYaw:
    """Rotation to request from the backend."""

    relative_yaw: float
    is_clamped: bool


def calculate_relative_yaw(
    base_yaw: float, target_yaw: float, clamp: float = DEFAULT_YAW_CLAMP_DEG
) -> RelativeYaw:
    """Relative yaw ``target - base`` limited to +/- ``clamp``.

    Clamping is reported through ``is_clamped`` rather than raised.

    Example:
        >>> calculate_relative_yaw(0, 100)
        RelativeYaw(relative_yaw=65.0, is_clamped=True)
    """
    raw = float(target_yaw) - float(base_yaw)
    limited = max(-clamp, min(clamp, raw))
    return RelativeYaw(relative_yaw=limited, is_clamped=limited != raw)


@dataclass
class RenderUnit:
    """Work executed in one worker slot.

    ``render_viewpoint`` is rendered once. ``primary`` is the task that owns
    the render (None when a right task borrows its absent left counterpart);
    ``mirrored`` tasks are derived from the render right after it.
    """

    render_viewpoint: str
    group: str
    primary: BatchTask | None
    mirrored: list[BatchTask] = field(default_factory=list)

    @property
    def tasks(self) -> list[BatchTask]:
        head = [self.primary] if self.primary is not None else []
        return head + self.mirrored


def plan_pose_units(tasks: list[BatchTask]) -> list[RenderUnit]:
    """Group pose tasks into render units, pairing mirrored viewpoints.

    Order follows the task list; a right task joins its left counterpart's
    unit when that counterpart is in the same group.
    """
    by_key = {(t.group, t.viewpoint): t for t in tasks}
    units: list[RenderUnit] = []
    unit_by_left: dict[tuple[str, str], RenderUnit] = {}

    for task in tasks:
        viewpoint = VIEWPOINTS[task.viewpoint]
        left_name = viewpoint.mirror_of
        if left_name is None:
            if (task.group, viewpoint.name) in unit_by_left:
                continue  # planned ahead by its right counterpart
            unit = RenderUnit(render_viewpoint=viewpoint.name, group=task.group, primary=task)
            unit_by_left[(task.group, viewpoint.name)] = unit
            units.append(unit)
            continue

        key = (task.group, left_name)
        if key in unit_by_left:
            unit_by_left[key].mirrored.append(task)
        elif key in by_key:
            # Left task comes later in the list: create its unit now
            unit = RenderUnit(render_viewpoint=left_name, group=task.group, primary=by_key[key])
            unit.mirrored.append(task)
            unit_by_left[key] = unit
            units.append(unit)
        else:
            unit = RenderUnit(render_viewpoint=left_name, group=task.group, primary=None)
            unit.mirrored.append(task)
            unit_by_left[key] = unit
            units.append(unit)

    return units


def unit_for_task(task: BatchTask) -> RenderUnit:
    """Render unit that re-runs a single task (retry).

    A mirrored right task re-renders its left counterpart on its own behalf;
    siblings are never touched.
    """
    if task.viewpoint is None:
        return RenderUnit(render_viewpoint="", group=task.group, primary=task)
    viewpoint = VIEWPOINTS[task.viewpoint]
    if viewpoint.mirror_of is None:
        return RenderUnit(render_viewpoint=viewpoint.name, group=task.group, primary=task)
    return RenderUnit(render_viewpoint=viewpoint.mirror_of, group=task.group, primary=None, mirrored=[task])
