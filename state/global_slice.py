"""
The ``global`` slice: application-wide UI preferences.
"""

from __future__ import annotations

from state.store import create_slice

initial_state = {
    "is_sidebar_collapsed": False,
    "is_dark_mode": False,
}

global_slice = create_slice(
    "global",
    initial_state,
    {
        "set_is_sidebar_collapsed": lambda state, action: {
            **state,
            "is_sidebar_collapsed": bool(action["payload"]),
        },
        "set_is_dark_mode": lambda state, action: {
            **state,
            "is_dark_mode": bool(action["payload"]),
        },
    },
)

set_is_sidebar_collapsed = global_slice.actions.set_is_sidebar_collapsed
set_is_dark_mode = global_slice.actions.set_is_dark_mode

global_reducer = global_slice.reducer
