import sys
import hmac
import random
import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache, partial
from typing import Callable, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings
from tabulate import tabulate

logger = logging.getLogger(__name__)

FACES_PER_DIE = 6
MIN_DICE = 3
EXIT_COMMAND = "x"
HELP_COMMAND = "?"

# ==============================================================================
# 1. Settings
# ==============================================================================

class Settings(BaseSettings):
    """Game settings loaded from DICE_GAME_* environment variables."""

    key_bytes: int = Field(default=32, ge=16)
    log_level: str = "WARNING"
    play_again: bool = True

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if not isinstance(logging.getLevelName(value.upper()), int):
            raise ValueError(f"unknown log level '{value}'")
        return value.upper()

    model_config = {
        "env_prefix": "DICE_GAME_",
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached singleton settings instance."""
    return Settings()

# ==============================================================================
# 2. Error Handling Classes
# ==============================================================================

class ConfigurationError(Exception):
    """
    Raised when the dice given at startup cannot form a game.
    Formats the message together with an example of correct usage.
    """
    _invocation_command = "python"

    @staticmethod
    def set_invocation_command(command: str):
        """Sets the command used to run the script (e.g., 'python' or 'py')."""
        ConfigurationError._invocation_command = command

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)

    def __str__(self) -> str:
        script_name = sys.argv[0] if sys.argv else 'dice_game.py'
        example = (
            f"{ConfigurationError._invocation_command} {script_name} "
            f"2,2,4,4,9,9 1,1,6,6,8,8 3,3,5,5,7,7"
        )
        return f"\nArgument Error: {self.message}\n\nExample usage:\n{example}\n"

    @classmethod
    def not_enough_dice(cls, count: int) -> "ConfigurationError":
        return cls(f"Please specify at least {MIN_DICE} dice (got {count}).")

    @classmethod
    def wrong_face_count(cls, position: int, arg: str) -> "ConfigurationError":
        return cls(
            f"Invalid dice at position {position}: '{arg}'. "
            f"Each dice must contain exactly {FACES_PER_DIE} integers."
        )

    @classmethod
    def non_integer_value(cls, position: int, arg: str) -> "ConfigurationError":
        return cls(f"Invalid dice at position {position}: '{arg}'. All faces must be integer values.")


class InvalidDie(ConfigurationError):
    pass


class RangeError(ValueError):
    """Raised when a commitment is requested over a non-positive range."""


InvalidRange = RangeError


class ProtocolError(RuntimeError):
    """Raised when a generator or session is driven out of order."""


class InputError(ValueError):
    """Raised for an interactive token the current prompt does not accept."""

# ==============================================================================
# 3. Data Structure for a Die
# ==============================================================================

@dataclass(frozen=True)
class Die:
    faces: tuple[int, ...]

    def __post_init__(self):
        try:
            faces = tuple(self.faces)
        except TypeError:
            raise InvalidDie(f"A die needs a sequence of {FACES_PER_DIE} faces, got {self.faces!r}.") from None
        if len(faces) != FACES_PER_DIE:
            raise InvalidDie(f"A die must have exactly {FACES_PER_DIE} faces, got {len(faces)}.")
        if not all(isinstance(f, int) and not isinstance(f, bool) for f in faces):
            raise InvalidDie("All dice faces must be integer values.")
        object.__setattr__(self, "faces", faces)

    def face_at(self, index: int) -> int:
        return self.faces[index]

    def __str__(self) -> str:
        return ",".join(map(str, self.faces))

    def __len__(self) -> int:
        return len(self.faces)

# ==============================================================================
# 4. Command-Line Argument Parser
# ==============================================================================

class DiceParser:
    @staticmethod
    def parse(args: list[str]) -> list[Die]:
        if len(args) < MIN_DICE:
            raise ConfigurationError.not_enough_dice(len(args))
        dice = []
        for position, arg in enumerate(args, start=1):
            parts = [p.strip() for p in arg.split(',')]
            try:
                faces = [int(p) for p in parts]
            except ValueError:
                raise ConfigurationError.non_integer_value(position, arg) from None
            if len(faces) != FACES_PER_DIE:
                raise ConfigurationError.wrong_face_count(position, arg)
            dice.append(Die(tuple(faces)))
        return dice

# ==============================================================================
# 5. Cryptographic Operations Provider
# ==============================================================================

class CryptoProvider:
    @staticmethod
    def generate_key(length: int) -> bytes:
        return secrets.token_bytes(length)

    @staticmethod
    def generate_secure_random(max_val: int) -> int:
        return secrets.randbelow(max_val)

    @staticmethod
    def calculate_hmac(key: bytes, message_int: int) -> str:
        message_bytes = str(message_int).encode('utf-8')
        h = hmac.new(key, message_bytes, hashlib.sha3_256)
        return h.hexdigest().upper()


@dataclass(frozen=True)
class Commitment:
    secret_key: bytes
    committed_value: int
    digest: str

    @property
    def key_hex(self) -> str:
        return self.secret_key.hex().upper()


class FairRandomGenerator:
    """
    Single-use commit-reveal source of one random value in [0, range).

    commit() draws the value and a fresh key and returns only the HMAC digest.
    reveal() hands back the key and value exactly once, after which the
    generator is spent and must be discarded.
    """

    def __init__(self, crypto: Optional[CryptoProvider] = None, key_bytes: int = 32):
        self.crypto = crypto or CryptoProvider()
        self.key_bytes = key_bytes
        self._commitment: Optional[Commitment] = None
        self._spent = False

    @property
    def digest(self) -> Optional[str]:
        return self._commitment.digest if self._commitment else None

    def commit(self, range_: int) -> str:
        if self._spent or self._commitment is not None:
            raise ProtocolError("A generator commits only once.")
        if range_ <= 0:
            raise RangeError(f"Cannot commit to a value in an empty range (range={range_}).")
        value = self.crypto.generate_secure_random(range_)
        key = self.crypto.generate_key(self.key_bytes)
        digest = self.crypto.calculate_hmac(key, value)
        self._commitment = Commitment(secret_key=key, committed_value=value, digest=digest)
        logger.debug("Committed to a value in range 0..%d (HMAC=%s)", range_ - 1, digest)
        return digest

    def reveal(self) -> Commitment:
        if self._commitment is None:
            raise ProtocolError("Nothing to reveal: commit() was not called or was already revealed.")
        commitment, self._commitment = self._commitment, None
        self._spent = True
        return commitment

    @staticmethod
    def verify(key: bytes, value: int, digest: str) -> bool:
        return hmac.compare_digest(CryptoProvider.calculate_hmac(key, value), digest.upper())


def combine(committed: int, contribution: int, modulus: int) -> int:
    """Blend the committed value with the counterparty's number."""
    return (committed + contribution) % modulus

# ==============================================================================
# 6. Probability Calculation Logic
# ==============================================================================

class ProbabilityCalculator:
    @staticmethod
    def _fraction(die1: Die, die2: Die, compare: Callable[[int, int], bool]) -> float:
        hits = sum(1 for f1 in die1.faces for f2 in die2.faces if compare(f1, f2))
        return round(hits / (len(die1) * len(die2)), 2)

    @staticmethod
    def win_probability(die1: Die, die2: Die) -> float:
        return ProbabilityCalculator._fraction(die1, die2, lambda a, b: a > b)

    @staticmethod
    def tie_fraction(die1: Die, die2: Die) -> float:
        return ProbabilityCalculator._fraction(die1, die2, lambda a, b: a == b)

# ==============================================================================
# 7. Help Table Generation
# ==============================================================================

class HelpTableGenerator:
    @staticmethod
    def generate_table(all_dice: list[Die]) -> str:
        headers = ["User v PC >"] + [f"{i}: {d}" for i, d in enumerate(all_dice)]
        table_data = []
        for i, user_die in enumerate(all_dice):
            row = [f"{i}: {user_die}"]
            for j, pc_die in enumerate(all_dice):
                prob = ProbabilityCalculator.win_probability(user_die, pc_die)
                row.append(f"*{prob:.2f}*" if i == j else f"{prob:.2f}")
            table_data.append(row)

        intro = (
            "\n--- Win Probability Table ---\n"
            "Each cell is the probability that the User's die (row) beats the PC's die (column).\n"
            "* Diagonal values compare a die with itself; both players cannot pick the same die.\n"
        )
        return intro + tabulate(table_data, headers=headers, tablefmt="grid", disable_numparse=True)

# ==============================================================================
# 8. Game Session State Machine
# ==============================================================================

class Player(Enum):
    USER = "User"
    COMPUTER = "Computer"

    @property
    def opponent(self) -> "Player":
        return Player.COMPUTER if self is Player.USER else Player.USER


class Phase(Enum):
    INIT = "init"
    DETERMINE_FIRST_MOVER = "determine_first_mover"
    SELECT_DICE_FIRST = "select_dice_first"
    SELECT_DICE_SECOND = "select_dice_second"
    THROW_USER = "throw_user"
    THROW_COMPUTER = "throw_computer"
    DETERMINE_WINNER = "determine_winner"
    TERMINAL = "terminal"
    CANCELLED = "cancelled"


SELECTION_PHASES = (Phase.SELECT_DICE_FIRST, Phase.SELECT_DICE_SECOND)
THROW_PHASES = {Phase.THROW_USER: Player.USER, Phase.THROW_COMPUTER: Player.COMPUTER}


@dataclass
class GameSession:
    dice: tuple[Die, ...]
    phase: Phase = Phase.INIT
    first_mover: Optional[Player] = None
    user_die_index: Optional[int] = None
    computer_die_index: Optional[int] = None
    user_throw: Optional[int] = None
    computer_throw: Optional[int] = None
    winner: Optional[Player] = None

    @property
    def is_tie(self) -> bool:
        return self.phase is Phase.TERMINAL and self.winner is None

    def die_index(self, player: Player) -> Optional[int]:
        return self.user_die_index if player is Player.USER else self.computer_die_index

    def die(self, player: Player) -> Die:
        return self.dice[self.die_index(player)]


@dataclass(frozen=True)
class Prompt:
    phase: Phase
    text: str
    options: tuple[tuple[int, str], ...] = field(default_factory=tuple)
    help_topic: str = "rules"

    @property
    def accepted(self) -> tuple[int, ...]:
        return tuple(value for value, _ in self.options)


class GameEngine:
    """
    Drives one session: fair coin toss for the first move, dice selection,
    one fair throw per player and the verdict.

    The engine only rests in phases that wait for the user (or in a terminal
    phase). Computer die selection and the winner are resolved inside the
    transition that reaches them.
    """

    def __init__(self, dice: list[Die], *, rng=None,
                 generator_factory: Callable[[], FairRandomGenerator] = FairRandomGenerator):
        if len(dice) < MIN_DICE:
            raise ConfigurationError.not_enough_dice(len(dice))
        self.session = GameSession(dice=tuple(dice))
        self.rng = rng or random.Random()
        self.generator_factory = generator_factory
        self._generator: Optional[FairRandomGenerator] = None
        self._events = []
        self._history = []

    # Events are simple dicts, drained by the UI
    def _emit(self, event: dict):
        self._events.append(event)
        self._history.append(event)

    def pop_events(self) -> list[dict]:
        ev = list(self._events)
        self._events.clear()
        return ev

    def get_events(self) -> list[dict]:
        """All events since the session was created, including drained ones."""
        return list(self._history)

    def _set_phase(self, phase: Phase):
        logger.debug("Phase %s -> %s", self.session.phase.value, phase.value)
        self.session.phase = phase

    @property
    def phase(self) -> Phase:
        return self.session.phase

    def is_terminal(self) -> bool:
        return self.session.phase in (Phase.TERMINAL, Phase.CANCELLED)

    def available_indices(self) -> list[int]:
        taken = {self.session.user_die_index, self.session.computer_die_index}
        return [i for i in range(len(self.session.dice)) if i not in taken]

    def selector(self) -> Player:
        """Player who picks a die in the current selection phase."""
        if self.session.phase is Phase.SELECT_DICE_FIRST:
            return self.session.first_mover
        return self.session.first_mover.opponent

    # --- commit / reveal ---------------------------------------------------

    def _commit(self, range_: int, purpose: str, player: Optional[Player] = None):
        self._generator = self.generator_factory()
        digest = self._generator.commit(range_)
        self._emit({"type": "CommitmentPublished", "purpose": purpose, "player": player,
                    "range": range_, "digest": digest})

    def _reveal(self) -> Commitment:
        generator, self._generator = self._generator, None
        commitment = generator.reveal()
        self._emit({"type": "CommitmentRevealed", "value": commitment.committed_value,
                    "key": commitment.key_hex, "digest": commitment.digest})
        return commitment

    # --- transitions -------------------------------------------------------

    def start(self) -> Phase:
        if self.session.phase is not Phase.INIT:
            raise ProtocolError("Session has already started.")
        self._set_phase(Phase.DETERMINE_FIRST_MOVER)
        self._commit(2, "first_mover")
        return self.session.phase

    def _on_guess(self, guess: int):
        commitment = self._reveal()
        computer_first = commitment.committed_value != guess
        self.session.first_mover = Player.COMPUTER if computer_first else Player.USER
        logger.debug("First mover: %s", self.session.first_mover.value)
        self._emit({"type": "FirstMoverDetermined", "player": self.session.first_mover,
                    "guess": guess, "value": commitment.committed_value})
        self._enter_selection(Phase.SELECT_DICE_FIRST)

    def _enter_selection(self, phase: Phase):
        self._set_phase(phase)
        if self.selector() is Player.COMPUTER:
            self._assign_die(Player.COMPUTER, self.rng.choice(self.available_indices()))

    def _assign_die(self, player: Player, index: int):
        if index not in self.available_indices():
            raise ProtocolError(f"Die {index} is not available.")
        if player is Player.USER:
            self.session.user_die_index = index
        else:
            self.session.computer_die_index = index
        self._emit({"type": "DieSelected", "player": player, "index": index,
                    "die": self.session.dice[index]})
        if self.session.phase is Phase.SELECT_DICE_FIRST:
            self._enter_selection(Phase.SELECT_DICE_SECOND)
        else:
            self._enter_throw(Phase.THROW_USER)

    def _enter_throw(self, phase: Phase):
        self._set_phase(phase)
        player = THROW_PHASES[phase]
        self._commit(len(self.session.die(player)), "throw", player)

    def _on_contribution(self, contribution: int):
        player = THROW_PHASES[self.session.phase]
        die = self.session.die(player)
        commitment = self._reveal()
        index = combine(commitment.committed_value, contribution, len(die))
        face = die.face_at(index)
        if player is Player.USER:
            self.session.user_throw = face
        else:
            self.session.computer_throw = face
        self._emit({"type": "ThrowResolved", "player": player, "value": commitment.committed_value,
                    "contribution": contribution, "modulus": len(die), "index": index, "face": face})
        if player is Player.USER:
            self._enter_throw(Phase.THROW_COMPUTER)
        else:
            self._determine_winner()

    def _determine_winner(self):
        self._set_phase(Phase.DETERMINE_WINNER)
        user, computer = self.session.user_throw, self.session.computer_throw
        if user > computer:
            self.session.winner = Player.USER
        elif computer > user:
            self.session.winner = Player.COMPUTER
        self._set_phase(Phase.TERMINAL)
        self._emit({"type": "GameEnded", "winner": self.session.winner,
                    "user_throw": user, "computer_throw": computer})

    def cancel(self):
        """Abandon the session; an outstanding commitment is discarded unrevealed."""
        self._generator = None
        self._set_phase(Phase.CANCELLED)
        self._emit({"type": "GameCancelled"})

    # --- interactive surface -----------------------------------------------

    def prompt(self) -> Prompt:
        phase = self.session.phase
        if phase is Phase.DETERMINE_FIRST_MOVER:
            return Prompt(phase, "Try to guess my selection.", ((0, "0"), (1, "1")))
        if phase in SELECTION_PHASES:
            options = tuple((i, str(self.session.dice[i])) for i in self.available_indices())
            return Prompt(phase, "Choose your dice:", options, help_topic="probabilities")
        if phase in THROW_PHASES:
            n = len(self.session.die(THROW_PHASES[phase]))
            return Prompt(phase, f"Add your number modulo {n}.",
                          tuple((i, str(i)) for i in range(n)))
        raise ProtocolError(f"No input is expected in phase '{phase.value}'.")

    def submit(self, token: str) -> Phase:
        """
        Feed one line of user input to the current phase.
        Raises InputError for anything the prompt does not accept; the phase
        is left unchanged in that case.
        """
        if self.is_terminal() or self.session.phase is Phase.INIT:
            raise ProtocolError(f"Session does not accept input in phase '{self.session.phase.value}'.")
        prompt = self.prompt()
        token = token.strip()

        if token.lower() == EXIT_COMMAND:
            self.cancel()
            return self.session.phase
        if token == HELP_COMMAND:
            self._emit({"type": "HelpRequested", "topic": prompt.help_topic, "phase": prompt.phase})
            return self.session.phase

        choice = int(token) if token.isdecimal() and token.isascii() else None
        if choice is None or choice not in prompt.accepted:
            raise InputError(
                f"Invalid selection '{token}'. Please enter one of "
                f"{', '.join(map(str, prompt.accepted))}, '?' for help or 'X' to exit."
            )

        if prompt.phase is Phase.DETERMINE_FIRST_MOVER:
            self._on_guess(choice)
        elif prompt.phase in SELECTION_PHASES:
            self._assign_die(Player.USER, choice)
        else:
            self._on_contribution(choice)
        return self.session.phase

# ==============================================================================
# 9. Console User Interface
# ==============================================================================

RULES_TEXT = (
    "\n--- Rules ---\n"
    "I commit to a secret random number and show you its HMAC (SHA3-256) first.\n"
    "You then pick a number; the result is (my number + your number) mod range.\n"
    "Afterwards I reveal my number and the key, so you can recompute the HMAC\n"
    "and check that I did not change my number after seeing yours.\n"
)


class ConsoleUI:
    def __init__(self, dice: list[Die]):
        self.dice = dice

    def display_message(self, text: str):
        print(text)

    def ask(self, prompt: Prompt) -> str:
        print(f"\n{prompt.text}")
        for value, label in prompt.options:
            print(f" {value} - {label}")
        print(" X - exit")
        print(" ? - help")
        return input("Your selection: ")

    def confirm(self, question: str) -> bool:
        return input(question).strip().lower() == 'y'

    def render(self, event: dict):
        kind = event["type"]
        if kind == "CommitmentPublished":
            if event["purpose"] == "first_mover":
                self.display_message("\nLet's determine who makes the first move.")
            else:
                whose = "my" if event["player"] is Player.COMPUTER else "your"
                self.display_message(f"\nIt's time for {whose} throw.")
            self.display_message(
                f"I selected a random value in the range 0..{event['range'] - 1} "
                f"(HMAC={event['digest']})."
            )
        elif kind == "CommitmentRevealed":
            self.display_message(f"My selection: {event['value']} (KEY={event['key']}).")
        elif kind == "FirstMoverDetermined":
            if event["player"] is Player.USER:
                self.display_message("You guessed right! You make the first move and choose the dice.")
            else:
                self.display_message("I make the first move and choose the dice.")
        elif kind == "DieSelected":
            if event["player"] is Player.COMPUTER:
                self.display_message(f"I choose the [{event['die']}] dice.")
            else:
                self.display_message(f"You choose the [{event['die']}] dice.")
        elif kind == "ThrowResolved":
            self.display_message(
                f"The fair number generation result is {event['value']} + {event['contribution']} "
                f"= {event['index']} (mod {event['modulus']})."
            )
            whose = "My" if event["player"] is Player.COMPUTER else "Your"
            self.display_message(f"{whose} throw is {event['face']}.")
        elif kind == "HelpRequested":
            if event["topic"] == "probabilities":
                self.display_message(HelpTableGenerator.generate_table(self.dice))
            else:
                self.display_message(RULES_TEXT)
        elif kind == "GameEnded":
            user, computer = event["user_throw"], event["computer_throw"]
            if event["winner"] is Player.USER:
                self.display_message(f"You win ({user} > {computer})!")
            elif event["winner"] is Player.COMPUTER:
                self.display_message(f"I win ({computer} > {user})!")
            else:
                self.display_message(f"It's a tie ({user} = {computer})!")
        elif kind == "GameCancelled":
            self.display_message("Exiting game. Goodbye!")

# ==============================================================================
# 10. Main Game Controller
# ==============================================================================

class GameController:
    def __init__(self, dice: list[Die], ui: ConsoleUI, settings: Settings,
                 generator_factory: Optional[Callable[[], FairRandomGenerator]] = None, rng=None):
        self.all_dice = dice
        self.ui = ui
        self.settings = settings
        self.generator_factory = generator_factory or partial(
            FairRandomGenerator, key_bytes=settings.key_bytes
        )
        self.rng = rng

    def run(self) -> GameSession:
        self.ui.display_message("--- Welcome to the Non-Transitive Dice Game! ---")
        while True:
            session = self.play_round()
            if session.phase is Phase.CANCELLED:
                return session
            if not self.settings.play_again or not self.ui.confirm("\nPlay another round? (y/n): "):
                self.ui.display_message("Thanks for playing!")
                return session

    def play_round(self) -> GameSession:
        engine = GameEngine(self.all_dice, rng=self.rng, generator_factory=self.generator_factory)
        engine.start()
        self._flush(engine)
        while not engine.is_terminal():
            token = self.ui.ask(engine.prompt())
            try:
                engine.submit(token)
            except InputError as e:
                self.ui.display_message(str(e))
            self._flush(engine)
        return engine.session

    def _flush(self, engine: GameEngine):
        for event in engine.pop_events():
            self.ui.render(event)

# ==============================================================================
# 11. Main Execution Block
# ==============================================================================

def main(argv: Optional[list[str]] = None):
    try:
        settings = get_settings()
        logging.basicConfig(
            level=settings.log_level,
            format="%(levelname)s %(name)s: %(message)s",
            stream=sys.stderr,
        )

        # Dynamically determine the command used to invoke the script
        if 'py.exe' in sys.executable.lower():
            ConfigurationError.set_invocation_command('py')
        else:
            ConfigurationError.set_invocation_command('python')

        args = sys.argv[1:] if argv is None else argv
        dice = DiceParser.parse(args)

        ui = ConsoleUI(dice)
        controller = GameController(dice, ui, settings)
        controller.run()

    except ValidationError as e:
        print(f"\nSettings Error: invalid DICE_GAME_* environment variables.\n{e}", file=sys.stderr)
        sys.exit(1)
    except ConfigurationError as e:
        print(e, file=sys.stderr)
        sys.exit(1)
    except (KeyboardInterrupt, EOFError):
        print("\nGame interrupted. Goodbye!")
        sys.exit(0)

if __name__ == "__main__":
    main()
