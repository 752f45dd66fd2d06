"""core/session/compiler.py — (tracks, mix state) -> one playable script.

Pure function of its inputs: no I/O, no clock, no randomness. Identical
inputs always produce byte-identical output, whatever the insertion order
of the ``tracks`` mapping.

Output layout for tracks ``{kick, snare}`` with snare soloed at 120 BPM::

    setcpm(120/4)

    // == kick ==
    _$: s("bd").tag('kick').orbit(0)

    // == snare ==
    $: s("sd").tag('snare').orbit(1)

Track bodies are opaque. The only structure recognised is the leading
``$:`` sigil, which is rewritten to ``_$:`` for effectively muted tracks.
A body without the sigil passes through unchanged even when muted.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from core.session.types import MixState

ACTIVE_SIGIL = "$:"
DISABLED_SIGIL = "_$:"


def orbit_assignments(track_ids: Iterable[str]) -> dict[str, int]:
    """Map each track id to its orbit: its 0-based index in sorted id order."""
    return {track_id: index for index, track_id in enumerate(sorted(track_ids))}


def mute_body(body: str) -> str:
    """Swap a leading active sigil for the disabled one.

    Idempotent: an already-disabled body no longer starts with ``$:``.
    """
    if body.startswith(ACTIVE_SIGIL):
        return DISABLED_SIGIL + body[len(ACTIVE_SIGIL) :]
    return body


def tempo_directive(bpm: float) -> str:
    """Quarter note per cycle: cycles per minute is ``bpm / 4``."""
    value = int(bpm) if float(bpm).is_integer() else bpm
    return f"setcpm({value}/4)"


def compile_mix(tracks: Mapping[str, str], state: MixState) -> str:
    """Compile the live session into a single script.

    Args:
        tracks: Track id -> raw track code.
        state: Current mixer state. Only ``muted``, ``solo``, ``bpm`` and
            ``global_fx`` affect the output.

    Returns:
        The compiled script. Empty string for no tracks and no global fx.
    """
    code = ""
    if state.bpm:
        code += tempo_directive(state.bpm) + "\n\n"

    orbits = orbit_assignments(tracks)
    for track_id, orbit in orbits.items():
        body = tracks[track_id].strip()
        if state.is_effectively_muted(track_id):
            body = mute_body(body)
        code += f"// == {track_id} ==\n"
        code += f"{body}.tag('{track_id}').orbit({orbit})\n\n"

    global_fx = state.global_fx.strip()
    if global_fx:
        code += f"// == global fx ==\n{global_fx}\n"

    return code
