"""Instruction text for each kind of backend edit.

Instructions describe intent only. The edited region is fixed by the mask
the result is composited into, never by the wording here.
"""

from __future__ import annotations

from atelier.models.types import (
    CleanupConfig,
    ColorReference,
    PoseChangeConfig,
    PropRemoveConfig,
    RecolorConfig,
)

POSE_PRESET_TEXT = {
    "neutral": "a relaxed neutral standing pose, arms at the sides",
    "micro_walk": "a subtle mid-stride walking pose",
    "hands_pocket": "a casual pose with one hand in a pocket",
    "arms_crossed_relaxed": "a relaxed pose with arms loosely crossed",
}

CATEGORY_TEXT = {
    "top": "the top garment",
    "bottom": "the bottom garment",
    "outer": "the outerwear",
    "onepiece": "the one-piece garment",
    "all": "all garments",
}

BACKGROUND_LOCK = (
    "Strictly maintain the original background pixel-for-pixel. Do NOT regenerate the background. "
)
QUALITY_SUFFIX = "Output must be high quality, photorealistic."


def cleanup_instruction(cleanup: CleanupConfig | None, prop_remove: PropRemoveConfig | None) -> str:
    """Inpainting instruction for the white region of the attached mask."""
    lines = [
        "INPAINT TASK. The second image is a mask: edit ONLY the white region of the first image.",
    ]
    if cleanup is not None and cleanup.enabled:
        targets = ", ".join(cleanup.targets) or "distracting clutter"
        lines.append(f"Remove {targets} from the background and fill in plausible background.")
    if prop_remove is not None and prop_remove.enabled:
        targets = ", ".join(prop_remove.targets) or "hand-held objects"
        lines.append(f"Remove the held {targets}.")
        if prop_remove.hand_restore:
            lines.append("Restore natural, anatomically correct hands where the objects were.")
    lines.append("Do not change the person, the garments or the lighting.")
    lines.append(QUALITY_SUFFIX)
    return "\n".join(lines)


def pose_instruction(pose: PoseChangeConfig, seed: int) -> str:
    """Pose change instruction for a configured preset."""
    lines = [
        "POSE CHANGE",
        f"Repose the model into {POSE_PRESET_TEXT[pose.preset]}.",
        "Maintain outfit details perfectly. Only change body posture.",
        "Keep the camera framing and subject scale unchanged.",
    ]
    if pose.strict_safety:
        lines.append("Keep the result modest and identical in identity, face and hairstyle.")
    lines.append(f"SEED: {seed}")
    lines.append(BACKGROUND_LOCK + QUALITY_SUFFIX)
    return "\n".join(lines)


def recolor_instruction(recolor: RecolorConfig, seed: int, has_reference_image: bool) -> str:
    """Recolor instruction for a hex or reference-image color source."""
    target = CATEGORY_TEXT[recolor.target_category]
    lines = ["RECOLOR", f"TARGET: {target}"]
    if recolor.color_source.type == "hex":
        lines.append(f"COLOR: {recolor.color_source.value}")
    elif has_reference_image:
        lines.append("COLOR: take the dominant color of the reference image (last image).")
    lines.append(f"TEXTURE LOCK: {recolor.texture_lock_strength:.2f}")
    lines.append(f"SEED: {seed}")
    lines.append(
        "Strictly recolor only the target area. Preserve original texture/lighting (Luminance)."
    )
    lines.append("Keep the background, skin and face/hair exactly the same.")
    return "\n".join(lines)


def color_reference_instruction(reference: ColorReference | None) -> str:
    """Color fragment of a pose variant instruction.

    Solid paint names the color; texture transfer refers to the attached
    reference image.
    """
    if reference is None:
        return "Keep the original outfit color and texture exactly as is. "
    if reference.mode == "texture_transfer" and reference.image_data:
        return (
            "[TEXTURE TRANSFER TASK]\n"
            'Apply the pattern, material, and texture from the "Reference Image" onto the garment '
            'of the model in the "Base Image".\n'
            "1. Texture Lock: transfer the knit/check/pattern details exactly from the Reference Image.\n"
            "2. Geometry Lock: do NOT change the shape of the garment. Keep all original folds, "
            "wrinkles, and shadows of the Base Image.\n"
            "3. Lighting Lock: the lighting on the new texture must match the original Base Image.\n"
        )
    hex_text = f" (Hex: {reference.hex_override})" if reference.hex_override else ""
    return (
        f"Change the outfit color to {reference.label}{hex_text}. "
        "CRITICAL: keep the background and face/hair exactly the same. Only change the garment color. "
    )


def viewpoint_instruction(
    viewpoint_text: str,
    relative_yaw: float,
    reference: ColorReference | None,
) -> str:
    """Single-call pose variant instruction: viewpoint plus color."""
    direction = "LEFT" if relative_yaw < 0 else "RIGHT"
    rotation = (
        "Keep the body rotation unchanged. "
        if relative_yaw == 0
        else f"Rotate the body {abs(relative_yaw):.0f} degrees to the {direction} from its current angle. "
    )
    return (
        f"CAMERA VIEW: {viewpoint_text} "
        + rotation
        + color_reference_instruction(reference)
        + BACKGROUND_LOCK
        + QUALITY_SUFFIX
    )
