import logging
import typing

import mido

logger = logging.getLogger(__name__)


def select_output_device(device_name: typing.Optional[str] = None) -> typing.Tuple[typing.Optional[str], typing.Optional[typing.Any]]:
    """
    Open the MIDI output port that live playback renders to.

    If `device_name` is provided, that port is opened or nothing is.
    If `device_name` is None, the only available port is used; with several
    ports the first one is used and the choice is logged.

    Returns:
        A tuple of (device_name, midi_out_object) or (None, None) on failure.
    """
    try:
        outputs = mido.get_output_names()
        logger.info(f"Available MIDI outputs: {outputs}")

        if not outputs:
            logger.error("No MIDI output devices found.")
            return None, None

        if device_name is not None:
            if device_name not in outputs:
                logger.error(
                    f"MIDI output device '{device_name}' not found. "
                    f"Available devices: {outputs}"
                )
                return None, None
            selected_name = device_name
        else:
            selected_name = outputs[0]
            if len(outputs) > 1:
                logger.info(f"{len(outputs)} MIDI outputs found - using '{selected_name}' (pass --output to choose)")

        midi_out = mido.open_output(selected_name)
        logger.info(f"Opened MIDI output: {selected_name}")
        return selected_name, midi_out

    except Exception as e:
        logger.error(f"Failed to open MIDI output: {e}")
        return None, None
