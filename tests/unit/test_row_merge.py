from runsheetcapture.application.services.row_merge import (
    ANALYSIS_FLAG_FIELD,
    ensure_row_count,
    flag_ambiguous_row,
    is_populated,
    merge_extracted_fields,
    row_has_real_data,
)


def test_placeholders_do_not_count_as_real_data() -> None:
    assert not is_populated(None)
    assert not is_populated("   ")
    assert not is_populated("Smith")  # five characters
    assert not is_populated("Document")
    assert not is_populated("scan_0042.PDF")
    assert not is_populated("photo.heic")
    assert is_populated("Smithson")
    assert is_populated("  Warranty Deed  ")


def test_row_is_real_only_when_every_column_is_populated() -> None:
    columns = ["Grantor", "Grantee"]
    assert row_has_real_data({"Grantor": "Johnathan Smith", "Grantee": "Acme Holdings"}, columns)
    assert not row_has_real_data({"Grantor": "Johnathan Smith", "Grantee": ""}, columns)
    assert not row_has_real_data({"Grantor": "Johnathan Smith", "Grantee": "deed.pdf"}, columns)
    assert not row_has_real_data({"Grantor": "Johnathan Smith"}, [])
    assert not row_has_real_data(None, columns)


def test_fill_empty_only_keeps_existing_values() -> None:
    row = {"Grantor": "Existing Owner", "Grantee": "  ", "Book": ""}
    written = merge_extracted_fields(
        row,
        {"Grantor": "New Owner", "Grantee": "Buyer LLC", "Book": "112"},
        fill_empty_only=True,
    )

    assert written == {"Grantee": "Buyer LLC", "Book": "112"}
    assert row == {"Grantor": "Existing Owner", "Grantee": "Buyer LLC", "Book": "112"}


def test_overwrite_all_writes_every_field() -> None:
    row = {"Grantor": "Existing Owner", "Grantee": ""}
    written = merge_extracted_fields(
        row,
        {"Grantor": "New Owner", "Grantee": "Buyer LLC"},
        fill_empty_only=False,
    )

    assert written == {"Grantor": "New Owner", "Grantee": "Buyer LLC"}
    assert row["Grantor"] == "New Owner"


def test_flag_and_row_padding() -> None:
    row: dict[str, str] = {}
    written = flag_ambiguous_row(row, 4)
    assert written == {ANALYSIS_FLAG_FIELD: "Multiple instruments detected (4) - manual split required"}
    assert row == written

    dataset: list[dict[str, str]] = [{"A": "1"}]
    ensure_row_count(dataset, 3)
    assert dataset == [{"A": "1"}, {}, {}]
    ensure_row_count(dataset, 2)
    assert len(dataset) == 3
