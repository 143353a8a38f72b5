"""
Main loop for the ember terminal UI.
"""
import os
import signal
import sys
from typing import Any, List, Optional

from logging_config import get_logger, setup_logging
from . import __description__, __version__, view
from .config import load_config
from .events import TaskRunner
from .player import MPVPlayer
from .session import Session
from .storage import Store
from .terminal import Terminal

logger = get_logger('app')

USAGE = """Usage:
  ember            # Run the interactive browser
  ember --debug    # Start with debug logging enabled
  ember --version  # Show version info
  ember --help     # Show this help"""


class Interrupts:
    """Signal flags checked by the main loop."""

    def __init__(self, session: Session):
        self.session = session
        self.quit = False

    def install(self) -> None:
        signal.signal(signal.SIGINT, self._handle_interrupt)
        signal.signal(signal.SIGTERM, self._handle_quit)
        signal.signal(signal.SIGHUP, self._handle_quit)

    def _handle_interrupt(self, signum: Optional[int] = None, frame: Any = None) -> None:
        # ctrl+c while mpv is in the foreground belongs to mpv
        if not self.session.player_active:
            self.quit = True

    def _handle_quit(self, signum: Optional[int] = None, frame: Any = None) -> None:
        self.quit = True


def run_loop(session: Session, runner: TaskRunner, term: Terminal, interrupts: Interrupts) -> None:
    def submit(tasks: List) -> None:
        runner.submit_all(tasks)

    rows, cols = term.size()
    term.resized = False
    submit(session.resize(cols, rows))
    submit(session.start())
    drawn = -1

    while not session.quit_requested and not interrupts.quit:
        if term.resized and not session.player_active:
            term.resized = False
            rows, cols = term.size()
            submit(session.resize(cols, rows))
            drawn = -1

        submit(session.tick())
        for event in runner.drain():
            submit(session.handle_event(event))

        if session.player_active:
            event = runner.get(timeout=0.1)
            if event is not None:
                submit(session.handle_event(event))
            continue

        if session.revision != drawn:
            term.write(view.render(session, rows, cols))
            drawn = session.revision

        key = term.read_key(0.05)
        if key is not None:
            submit(session.handle_key(key))


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for ember."""
    argv = sys.argv[1:] if argv is None else argv

    if "--version" in argv or "-v" in argv:
        print(f"ember {__version__}")
        print(__description__)
        return 0
    if "--help" in argv or "-h" in argv:
        print(f"ember {__version__}")
        print("")
        print(USAGE)
        return 0

    if not sys.stdin.isatty() or not sys.stdout.isatty():
        print("Error: Must run in interactive terminal", file=sys.stderr)
        return 1

    manager = load_config()
    config = manager.config
    if "--debug" in argv:
        config.debug_logging = True
    level = "DEBUG" if config.debug_logging else config.log_level
    setup_logging(level, manager.get_log_file_path())
    for issue in manager.validate_config():
        logger.warning(issue)
    logger.info(f"Starting ember {__version__}")

    store = Store(manager.config_dir)
    player = MPVPlayer.detect(config.player_paths,
                              subtitle_languages=config.subtitle_languages,
                              extra_args=config.player_args)
    runner = TaskRunner(config.workers)

    try:
        with Terminal() as term:
            session = Session(store, config, player, foreground=term.suspended,
                              default_url=os.environ.get("EMBER_SERVER", ""))
            interrupts = Interrupts(session)
            interrupts.install()
            run_loop(session, runner, term, interrupts)
    finally:
        runner.shutdown()
        logger.info("Exiting")

    print("\n  Bye!")
    return 0


def run() -> None:
    sys.exit(main())
