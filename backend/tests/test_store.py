from sitelapse.models import FAILED, PHOTO, PROCESSING, QUEUED, READY, STARTING, VIDEO, Job


def make_job(kind=VIDEO, **fields):
    values = dict(kind=kind, owner="dsv", collection="p1", device="cam1", start_date="20240101",
                  end_date="20240107", start_hour="08", end_hour="18", frame_count=2)
    values.update(fields)
    return Job(**values)


def test_ids_are_24_hex_characters():
    job = make_job()
    assert len(job.id) == 24
    int(job.id, 16)


def test_add_keeps_insertion_order(store):
    ids = [store.add(make_job(kind)).id for kind in (VIDEO, PHOTO, VIDEO)]
    assert [j.id for j in store.list()] == ids
    assert [j.id for j in store.list(kind=VIDEO)] == [ids[0], ids[2]]


def test_next_queued_is_oldest_of_kind(store):
    first = store.add(make_job())
    second = store.add(make_job())
    store.update(first.id, status=READY)
    assert store.next_queued(VIDEO).id == second.id
    assert store.next_queued(PHOTO) is None


def test_update_and_delete(store):
    job = store.add(make_job())
    updated = store.update(job.id, status=PROCESSING, progress=40, progress_message="Processed batch 1 of 2")
    assert updated.progress == 40
    assert store.get(job.id).status == PROCESSING
    assert store.update("missing", status=READY) is None

    assert store.delete(job.id) is True
    assert store.get(job.id) is None
    assert store.delete(job.id) is False


def test_fail_interrupted(store):
    running = store.add(make_job(status=PROCESSING))
    starting = store.add(make_job(status=STARTING))
    waiting = store.add(make_job())
    assert store.fail_interrupted() == 2
    assert store.get(running.id).status == FAILED
    assert store.get(starting.id).error == "interrupted by restart"
    assert store.get(waiting.id).status == QUEUED


def test_record_shape(store):
    job = store.add(make_job(frame_rate=25, resolution="HD"))
    record = job.to_record()
    assert record["tags"] == {"owner": "dsv", "collection": "p1", "device": "cam1"}
    assert record["dateRange"] == {"start": "20240101", "end": "20240107"}
    assert record["video"]["resolution"] == "HD"
    assert "video" not in store.add(make_job(PHOTO)).to_record()
