import asyncio

import pytest

from pet_identification import AnimalIdentifier
from pet_identification.events import StatusKind


@pytest.fixture
def identifier(context):
    return AnimalIdentifier(context=context)


def _add(identifier, make_image, positive, negative, seed=0):
    for index, label in enumerate([True] * positive + [False] * negative):
        images = [make_image(seed + 2 * index), make_image(seed + 2 * index + 1)]
        assert identifier.add_training_pair(images, label).success


def test_initialize_twice_is_a_no_op(identifier):
    first = identifier.initialize()
    second = identifier.initialize()

    assert first.success and second.success
    assert second.value is first.value


def test_full_session(identifier, make_image, tmp_path):
    events = []
    identifier.subscribe(events.append)
    _add(identifier, make_image, 2, 2)

    training = asyncio.run(identifier.start_training())
    assert training.success, training.message

    comparison = identifier.compare([make_image(100), make_image(101)])
    assert comparison.success, comparison.message

    stats = identifier.get_stats()
    assert stats['trainingPairs'] == 4
    assert stats['positivePairs'] == 2
    assert stats['comparisonCount'] == 1
    assert stats['isInitialized'] is True
    assert stats['isTraining'] is False
    assert stats['backend'] == 'cpu'
    assert stats['lastEpoch'] == 2
    assert stats['finalAccuracy'] == training.value.final_accuracy

    saved = identifier.save_model(tmp_path / "model.json")
    assert saved.success, saved.message

    kinds = {event.kind for event in events}
    assert {StatusKind.ADDING, StatusKind.TRAINING, StatusKind.COMPARISON, StatusKind.STORAGE} <= kinds


def test_reset(identifier, make_image):
    _add(identifier, make_image, 1, 1)
    identifier.initialize()
    old_model = identifier.context.model.siamese_model
    identifier.compare([make_image(50), make_image(51)])

    result = identifier.reset()

    assert result.success
    assert identifier.context.model.siamese_model is not old_model
    assert identifier.get_stats()['trainingPairs'] == 0
    assert identifier.get_stats()['comparisonCount'] == 0
    assert identifier.context.registry.live_count == 0


def test_reset_refused_while_training(identifier):
    identifier.context.is_training = True

    result = identifier.reset()

    assert not result.success
    assert result.status == 400


def test_import_and_load_refused_while_training(identifier, make_image):
    _add(identifier, make_image, 1, 1)
    identifier.initialize()
    document = identifier.export_model().value
    identifier.save_training_pairs()
    model = identifier.context.model
    identifier.context.is_training = True

    imported = asyncio.run(identifier.import_model(document))
    loaded = asyncio.run(identifier.load_training_pairs())

    assert (imported.status, imported.message) == (400, "Cannot import while training is in progress")
    assert loaded.status == 400
    assert identifier.context.model is model
    assert identifier.get_stats()['trainingPairs'] == 2
    assert identifier.context.registry.live_count == 4


def test_import_during_a_training_run_is_rejected(identifier, make_image):
    _add(identifier, make_image, 2, 2)
    identifier.initialize()
    document = identifier.export_model().value
    model = identifier.context.model

    async def import_once_training_started():
        await asyncio.sleep(0)
        return await identifier.import_model(document, restore_pairs=False)

    async def session():
        return await asyncio.gather(identifier.start_training(epochs=3), import_once_training_started())

    training, imported = asyncio.run(session())

    assert training.success, training.message
    assert imported.status == 400
    assert identifier.context.model is model
    assert identifier.get_stats()['lastEpoch'] == 3


def test_export_training_data(identifier, make_image):
    _add(identifier, make_image, 1, 1)

    result = identifier.export_training_data(name="pets")

    assert result.success
    summary = result.value
    assert summary['metadata']['name'] == 'pets'
    assert summary['metadata']['imageSize'] == 16
    assert summary['balance']['total'] == 2
    assert summary['pairsMetadata'][0] == {'index': 0, 'label': 1, 'labelText': 'same animal'}


def test_training_pairs_round_trip_through_store(identifier, make_image, config, store):
    _add(identifier, make_image, 1, 1)
    assert identifier.save_training_pairs().success

    other = AnimalIdentifier(config=config, store=store)
    result = asyncio.run(other.load_training_pairs())

    assert result.success, result.message
    assert other.get_stats()['trainingPairs'] == 2


def test_close_releases_pairs(identifier, make_image):
    _add(identifier, make_image, 1, 0)
    identifier.close()

    assert identifier.context.registry.live_count == 0
