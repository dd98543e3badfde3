"""Rep targets and calorie burn per exercise.

Targets offset a share of the meal's calories rather than all of it, and are
clamped so tiny snacks and huge meals both produce a doable number.
"""
import math
from dataclasses import dataclass

from db.models import ExerciseType

BALANCE_RATIO = 0.25
MIN_RECOMMENDED_REPS = 8
MAX_REPS_MULTIPLIER = 5
TOO_MANY_REPS_THRESHOLD = 60
DEFAULT_REPS_PER_SET = 20


@dataclass(frozen=True)
class ExerciseDefinition:
    exercise_type: ExerciseType
    name: str
    calories_per_rep: float
    default_reps: int
    description: str


EXERCISES: dict[ExerciseType, ExerciseDefinition] = {
    ExerciseType.SQUAT: ExerciseDefinition(
        exercise_type=ExerciseType.SQUAT,
        name="Squats",
        calories_per_rep=0.5,
        default_reps=20,
        description="Lower body strength",
    ),
    ExerciseType.SITUP: ExerciseDefinition(
        exercise_type=ExerciseType.SITUP,
        name="Sit-ups",
        calories_per_rep=0.3,
        default_reps=30,
        description="Core strength",
    ),
    ExerciseType.PUSHUP: ExerciseDefinition(
        exercise_type=ExerciseType.PUSHUP,
        name="Push-ups",
        calories_per_rep=0.4,
        default_reps=15,
        description="Upper body strength",
    ),
}


def get_exercise(exercise_type: ExerciseType | str) -> ExerciseDefinition:
    return EXERCISES[ExerciseType(exercise_type)]


def calculate_recommended_reps(calories: float, exercise: ExerciseDefinition) -> int:
    if calories is None or calories <= 0:
        return exercise.default_reps
    raw_reps = math.ceil((calories * BALANCE_RATIO) / exercise.calories_per_rep)
    max_for_exercise = exercise.default_reps * MAX_REPS_MULTIPLIER
    return min(max(raw_reps, MIN_RECOMMENDED_REPS), max_for_exercise)


def calculate_burned_calories(reps: int, exercise: ExerciseDefinition) -> int:
    # half-up, not banker's rounding
    return int(math.floor(max(0, reps) * exercise.calories_per_rep + 0.5))


def is_too_many_reps(reps: int) -> bool:
    return reps >= TOO_MANY_REPS_THRESHOLD


def calculate_sets(total_reps: int, reps_per_set: int = DEFAULT_REPS_PER_SET) -> int:
    return math.ceil(max(0, total_reps) / max(1, reps_per_set))
