### vendor imports
import sh

### local imports
from . import helper


def get_borg() -> sh.Command:
    try:
        return sh.Command("borg")
    except sh.CommandNotFound:
        helper.print_error(
            "You must install borg and ensure its binary is in the terminal's PATH before running borrg."
        )
