import logging

from fastapi import APIRouter, Depends, HTTPException

from loop_engine.core.errors import AlgorithmError
from loop_engine.core.settings import LoopConstants, get_loop_constants
from loop_engine.models.loop import LoopAlgorithmInputModel, LoopAlgorithmOutputModel, PredictionModel
from loop_engine.services.forecast_engine import ForecastEngine
from loop_engine.services.loop_algorithm import run
from loop_engine.services.math.curves import DEFAULT_MODEL_PROVIDER, InsulinModelProvider

logger = logging.getLogger(__name__)

router = APIRouter()


def get_model_provider() -> InsulinModelProvider:
    return DEFAULT_MODEL_PROVIDER


def _unprocessable(exc: AlgorithmError) -> HTTPException:
    logger.warning("Loop algorithm rejected input", extra={"error": exc.kind, "detail": str(exc)})
    return HTTPException(
        status_code=422,
        detail={"error": exc.kind, "message": str(exc)},
    )


@router.post("/prediction", response_model=PredictionModel, summary="Forecast glucose and its effect curves")
def predict(
    payload: LoopAlgorithmInputModel,
    constants: LoopConstants = Depends(get_loop_constants),
    model_provider: InsulinModelProvider = Depends(get_model_provider),
):
    data = payload.to_input()
    try:
        prediction = ForecastEngine.generate_prediction(
            data.glucose_history,
            data.doses,
            data.carb_entries,
            data.basal,
            data.sensitivity,
            data.carb_ratio,
            prediction_start=data.prediction_start,
            algorithm_effects_options=data.algorithm_effects_options,
            use_integral_retrospective_correction=data.use_integral_retrospective_correction,
            constants=constants,
            model_provider=model_provider,
        )
    except AlgorithmError as exc:
        raise _unprocessable(exc) from exc
    return PredictionModel.from_prediction(prediction)


@router.post(
    "/recommendation",
    response_model=LoopAlgorithmOutputModel,
    response_model_exclude_none=True,
    summary="Run one loop cycle and recommend a dose",
)
def recommend(
    payload: LoopAlgorithmInputModel,
    include_prediction: bool = False,
    constants: LoopConstants = Depends(get_loop_constants),
    model_provider: InsulinModelProvider = Depends(get_model_provider),
):
    try:
        output = run(payload.to_input(), constants=constants, model_provider=model_provider)
    except AlgorithmError as exc:
        raise _unprocessable(exc) from exc
    return LoopAlgorithmOutputModel.from_output(output, include_prediction=include_prediction)
