import asyncio
import json

import pytest
import torch

from pet_identification import persistence
from pet_identification.context import IdentificationContext, initialize
from pet_identification.events import StatusKind
from pet_identification.image_sources import fetch_image
from pet_identification.pair_store import PairRecord, add_training_pair
from pet_identification.persistence import (capture_artifacts, decode_weights, export_model, import_model,
                                            load_model_file, load_training_pairs, read_pair_records,
                                            save_model, save_training_pairs)


def _fixed_inputs():
    generator = torch.Generator().manual_seed(1)
    return torch.randn(2, 16, 16, 3, generator=generator), torch.randn(2, 16, 16, 3, generator=generator)


def test_export_without_model_is_not_found(context):
    result = export_model(context)

    assert not result.success
    assert result.status == 404


def test_export_document_layout(context, add_pairs):
    initialize(context)
    add_pairs(1, 1)
    context.comparison_count = 3

    result = export_model(context)

    assert result.success, result.message
    document = result.value
    assert set(document) == {'metadata', 'siameseModel', 'featureExtractor'}
    assert document['metadata']['name'] == 'animal-identifier-pet-identification'
    assert document['metadata']['imageSize'] == 16
    assert document['metadata']['featureSize'] == 8
    assert document['metadata']['trainingPairsCount'] == 2
    assert document['metadata']['comparisonCount'] == 3

    artifacts = document['featureExtractor']
    expected_bytes = 4 * sum(
        int(torch.tensor(spec['shape']).prod()) if spec['shape'] else 1 for spec in artifacts['weightSpecs']
    )
    assert len(artifacts['weightData']) == expected_bytes
    assert all(0 <= value <= 255 for value in artifacts['weightData'][:1000])
    assert artifacts['modelTopology']['class_name'] == 'FeatureExtractor'

    # Survives a JSON round trip
    assert json.loads(json.dumps(document))['metadata'] == document['metadata']


def test_weight_bytes_round_trip(context):
    initialize(context)
    extractor = context.model.feature_extractor
    artifacts = capture_artifacts(extractor)

    state = decode_weights(artifacts['weightSpecs'], artifacts['weightData'])

    for name, tensor in extractor.state_dict().items():
        assert torch.equal(state[name], tensor)


def test_export_import_gives_identical_scores(context, config, store):
    initialize(context)
    image_a, image_b = _fixed_inputs()
    expected = context.model.siamese_model.predict(image_a, image_b)
    document = json.loads(json.dumps(export_model(context, name="round-trip").value))

    restored = IdentificationContext(config=config, store=store)
    result = asyncio.run(import_model(restored, document, restore_pairs=False))

    assert result.success, result.message
    model_state = result.value
    assert model_state.siamese_model.feature_extractor is model_state.feature_extractor
    assert torch.allclose(model_state.siamese_model.predict(image_a, image_b), expected, atol=1e-6)
    assert restored.emitter.history[-1].kind == StatusKind.DONE


def test_import_restores_metadata_into_config(context, config, store):
    initialize(context)
    document = export_model(context).value
    document['metadata']['taskName'] = 'dogs'

    restored = IdentificationContext(config=config.with_overrides(image_size=32, feature_size=4), store=store)
    result = asyncio.run(import_model(restored, document, restore_pairs=False))

    assert result.success, result.message
    assert restored.config.task_name == 'dogs'
    assert restored.config.image_size == 16
    assert restored.config.feature_size == 8


@pytest.mark.parametrize("document", [
    {},
    {'metadata': {}, 'siameseModel': {}},
    {'siameseModel': [], 'featureExtractor': {}},
    [],
])
def test_import_rejects_invalid_structure(context, document):
    result = asyncio.run(import_model(context, document))

    assert not result.success
    assert result.status == 400
    assert "Invalid data structure" in result.message
    assert not context.model.is_ready


def test_import_rejects_truncated_weights(context, config, store):
    initialize(context)
    document = export_model(context).value
    document['featureExtractor']['weightData'] = document['featureExtractor']['weightData'][:-4]

    restored = IdentificationContext(config=config, store=store)
    result = asyncio.run(import_model(restored, document))

    assert not result.success
    assert result.status == 400
    assert not restored.model.is_ready


def test_import_rejects_out_of_range_bytes(context, config, store):
    initialize(context)
    document = export_model(context).value
    document['siameseModel']['weightData'][0] = 300

    result = asyncio.run(import_model(IdentificationContext(config=config, store=store), document))

    assert not result.success
    assert result.status == 400
    assert "Malformed weight data" in result.message


def test_save_training_pairs_writes_records(context, store, add_pairs):
    add_pairs(1, 1)

    result = save_training_pairs(context)

    assert result.success
    assert result.value == 2
    stored = json.loads(store.get('pair-array'))
    assert [item['isSameAnimal'] for item in stored] == [True, False]
    assert set(stored[0]) == {'image1Url', 'image2Url', 'isSameAnimal'}


def test_load_training_pairs_rehydrates(context, config, store, add_pairs):
    add_pairs(2, 1)
    save_training_pairs(context)

    restored = IdentificationContext(config=config, store=store)
    result = asyncio.run(load_training_pairs(restored))

    assert result.success, result.message
    assert result.value.to_dict() == {'positive': 2, 'negative': 1, 'total': 3}
    assert restored.pairs.records == context.pairs.records
    assert restored.registry.live_count == 6
    for original, rehydrated in zip(context.pairs, restored.pairs):
        assert torch.allclose(original.image1, rehydrated.image1)
        assert original.label == rehydrated.label


def test_pairs_from_bare_pil_images_survive_reload(context, config, store, make_image):
    for index, label in enumerate([True, False]):
        images = [make_image(10 + 2 * index).image, make_image(11 + 2 * index).image]
        assert add_training_pair(context, images, label).success
    save_training_pairs(context)

    restored = IdentificationContext(config=config, store=store)
    result = asyncio.run(load_training_pairs(restored))

    assert result.success, result.message
    assert result.value.total == 2
    for original, rehydrated in zip(context.pairs, restored.pairs):
        assert torch.allclose(original.image2, rehydrated.image2)


def test_training_started_mid_load_discards_rehydrated_pairs(context, config, store, add_pairs, monkeypatch):
    add_pairs(1, 1)
    save_training_pairs(context)
    restored = IdentificationContext(config=config, store=store)

    async def fetch_while_training_starts(url):
        restored.is_training = True
        return await fetch_image(url)

    monkeypatch.setattr(persistence, "fetch_image", fetch_while_training_starts)
    result = asyncio.run(load_training_pairs(restored))

    assert result.status == 400
    assert len(restored.pairs) == 0
    assert restored.registry.live_count == 0


def test_load_training_pairs_empty_slot(context):
    result = asyncio.run(load_training_pairs(context))

    assert not result.success
    assert result.status == 404


def test_rehydration_is_all_or_nothing(context, store, make_image):
    good = PairRecord(make_image(1).url, make_image(2).url, True)
    bad = PairRecord(make_image(3).url, "data:image/png;base64,AAAA", False)
    store.set('pair-array', json.dumps([good.to_dict(), bad.to_dict()]))

    result = asyncio.run(load_training_pairs(context))

    assert not result.success
    assert len(context.pairs) == 0
    assert context.registry.live_count == 0


def test_read_pair_records_rejects_malformed_slot(context, store):
    store.set('pair-array', json.dumps({'not': 'a list'}))
    with pytest.raises(Exception, match="JSON array"):
        read_pair_records(context)


def test_import_restores_stored_pairs(context, config, store, add_pairs):
    initialize(context)
    add_pairs(1, 1)
    document = export_model(context).value
    save_training_pairs(context)

    restored = IdentificationContext(config=config, store=store)
    result = asyncio.run(import_model(restored, document))

    assert result.success, result.message
    assert len(restored.pairs) == 2
    assert restored.emitter.history[-1].details['restored_pairs'] == 2


def test_save_and_load_model_file(context, config, store, add_pairs, tmp_path):
    initialize(context)
    add_pairs(1, 0)
    path = tmp_path / "models" / "model.json"

    result = save_model(context, path, name="saved")

    assert result.success, result.message
    assert path.exists()
    assert store.get('pair-array') is not None
    assert json.loads(path.read_text())['metadata']['name'] == 'saved'

    restored = IdentificationContext(config=config, store=store)
    loaded = asyncio.run(load_model_file(restored, path))

    assert loaded.success, loaded.message
    assert restored.model.is_ready
    assert len(restored.pairs) == 1


def test_load_missing_model_file(context, tmp_path):
    result = asyncio.run(load_model_file(context, tmp_path / "missing.json"))

    assert not result.success
    assert result.status == 404


def test_load_model_file_invalid_json(context, tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json")

    result = asyncio.run(load_model_file(context, path))

    assert not result.success
    assert result.status == 400
