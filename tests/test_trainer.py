import asyncio

import torch

from pet_identification.events import StatusKind
from pet_identification.trainer import TrainingOrchestrator, TrainingState


def _weights(context):
    return [p.detach().clone() for p in context.model.siamese_model.network.parameters()]


def test_rejects_with_fewer_than_four_pairs(context, add_pairs):
    add_pairs(2, 1)
    trainer = TrainingOrchestrator(context)

    result = asyncio.run(trainer.start_training())

    assert not result.success
    assert result.status == 400
    assert "not enough" in result.message.lower()
    assert trainer.state_history[-2:] == [TrainingState.REJECTED, TrainingState.IDLE]
    assert not context.model.is_initialized


def test_rejects_imbalanced_data(context, add_pairs):
    add_pairs(10, 5)
    trainer = TrainingOrchestrator(context)

    result = asyncio.run(trainer.start_training(epochs=1))

    assert not result.success
    assert result.status == 400
    assert "imbalance" in result.message.lower()
    assert "10 positives, 5 negatives" in result.message


def test_accepts_near_balanced_data(context, add_pairs):
    add_pairs(10, 9)
    trainer = TrainingOrchestrator(context)

    result = asyncio.run(trainer.start_training(epochs=1))

    assert result.success, result.message
    assert result.value.epochs == 1


def test_successful_run(context, add_pairs):
    add_pairs(2, 2)
    trainer = TrainingOrchestrator(context)
    events = []
    context.emitter.subscribe(events.append)

    result = asyncio.run(trainer.start_training())

    assert result.success, result.message
    summary = result.value
    assert summary.epochs == 2
    assert len(summary.history['loss']) == 2
    assert context.final_accuracy == summary.final_accuracy
    assert context.last_epoch == 2
    assert not context.is_training

    assert trainer.state_history == [
        TrainingState.IDLE, TrainingState.PRECONDITION_CHECK, TrainingState.TRAINING,
        TrainingState.DONE, TrainingState.IDLE,
    ]
    epoch_events = [e for e in events if e.kind == StatusKind.TRAINING and 'epoch' in e.details]
    assert [e.details['epoch'] for e in epoch_events] == [1, 2]
    assert events[-1].kind == StatusKind.DONE

    # Only the pair tensors remain live
    assert context.registry.live_count == 8


def test_training_changes_weights(context, add_pairs):
    add_pairs(2, 2)
    trainer = TrainingOrchestrator(context)
    assert context.model.is_ready is False

    asyncio.run(trainer.start_training(epochs=1))
    before = _weights(context)
    asyncio.run(trainer.start_training(epochs=1))
    after = _weights(context)

    assert any(not torch.equal(a, b) for a, b in zip(before, after))


def test_concurrent_request_is_rejected_without_disturbing_active_run(context, add_pairs):
    add_pairs(2, 2)
    trainer = TrainingOrchestrator(context)

    async def run_both():
        return await asyncio.gather(
            trainer.start_training(epochs=3),
            trainer.start_training(epochs=1),
        )

    first, second = asyncio.run(run_both())

    assert first.success, first.message
    assert not second.success
    assert second.status == 400
    assert "already in progress" in second.message
    assert trainer.progress.epoch == 3
    assert trainer.progress.epochs == 3
    assert TrainingState.REJECTED not in trainer.state_history
    assert trainer.state == TrainingState.IDLE


def test_failure_during_fit(context, add_pairs, monkeypatch):
    add_pairs(2, 2)
    trainer = TrainingOrchestrator(context)
    assert asyncio.run(trainer.start_training(epochs=1)).success

    async def broken_fit(*args, **kwargs):
        raise RuntimeError("out of memory")

    monkeypatch.setattr(context.model.siamese_model, 'fit', broken_fit)
    result = asyncio.run(trainer.start_training())

    assert not result.success
    assert result.status == 500
    assert result.message == "Training failed: out of memory"
    assert not context.is_training
    assert trainer.last_error == result
    assert context.registry.live_count == 8


def test_invalid_override_is_rejected(context, add_pairs):
    add_pairs(2, 2)
    result = asyncio.run(TrainingOrchestrator(context).start_training(batch_size=0))

    assert not result.success
    assert result.status == 400
