from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from storeops_app.imports.errors import UnknownImportTargetError

FIELD_KIND_TEXT = "text"
FIELD_KIND_PRICE = "price"
FIELD_KIND_QUANTITY = "quantity"

SQL_TYPE_BY_KIND = {
    FIELD_KIND_TEXT: "TEXT",
    FIELD_KIND_PRICE: "REAL",
    FIELD_KIND_QUANTITY: "INTEGER",
}

DEFAULT_IMPORT_TARGET = "pricelist"
SPREADSHEET_EXTENSIONS = {".xlsx": "xlsx", ".xlsm": "xlsx", ".xls": "xls"}


@dataclass(frozen=True)
class ImportField:
    key: str
    label: str
    aliases: tuple[str, ...]
    kind: str = FIELD_KIND_TEXT
    default: Any = None


@dataclass(frozen=True)
class ImportTarget:
    key: str
    label: str
    table: str
    fields: tuple[ImportField, ...]
    header_vocabulary: tuple[str, ...]
    required: tuple[str, ...] = ()
    required_any: tuple[str, ...] = ()
    context_fields: tuple[str, ...] = ()
    description: str = ""
    extra_columns: tuple[tuple[str, str], ...] = field(default_factory=tuple)

    @property
    def field_keys(self) -> tuple[str, ...]:
        return tuple(item.key for item in self.fields)

    def column_types(self) -> list[tuple[str, str]]:
        columns = [(key, "TEXT") for key in self.context_fields]
        columns.extend((item.key, SQL_TYPE_BY_KIND.get(item.kind, "TEXT")) for item in self.fields)
        columns.extend(self.extra_columns)
        return columns


_SN_ALIASES = (
    "sn",
    "s/n",
    "serial_number",
    "serial number",
    "serial no",
    "serial",
    "serialnumber",
    "serialno",
    "nomor serial",
    "no seri",
    "no. seri",
)
_KODE_ITEM_ALIASES = (
    "kode_item",
    "kode item",
    "item_code",
    "item code",
    "itemcode",
    "sku",
    "kode barang",
    "kode_barang",
    "kode produk",
    "product code",
    "code",
    "kode",
)
_NAMA_ITEM_ALIASES = (
    "nama_item",
    "nama item",
    "nama barang",
    "nama_barang",
    "item_name",
    "item name",
    "product name",
    "product_name",
    "nama produk",
    "description",
    "deskripsi",
    "name",
    "nama",
)
_QTY_ALIASES = (
    "qty",
    "quantity",
    "jumlah",
    "kuantitas",
    "stok",
    "stock",
    "pcs",
    "amount",
)


IMPORT_TARGETS: dict[str, ImportTarget] = {
    "pricelist": ImportTarget(
        key="pricelist",
        label="Pricelist",
        table="pricelist",
        description="Master pricelist rows keyed by item code.",
        fields=(
            ImportField("sn", "SN", _SN_ALIASES),
            ImportField("kode_item", "Kode Item", _KODE_ITEM_ALIASES),
            ImportField("kelompok", "Kelompok", ("kelompok", "kelompol", "group", "category_group", "category")),
            ImportField("family", "Family", ("family", "famili", "familia")),
            ImportField(
                "deskripsi_material",
                "Kode Material",
                ("kode_material", "kode material", "material_code", "material code", "deskripsi_material", "deskripsi material"),
            ),
            ImportField("kode_motif", "Kode Motif", ("kode_motif", "kode motif", "motif_code", "pattern_code")),
            ImportField("nama_motif", "Nama Motif", ("nama_motif", "nama motif", "motif_name", "pattern_name", "nama")),
            ImportField(
                "normal_price",
                "Normal Price",
                ("normal_price", "normal price", "harga_normal", "harga normal", "price", "harga"),
                kind=FIELD_KIND_PRICE,
            ),
        ),
        header_vocabulary=(
            "sn", "s/n", "serial", "serial number",
            "kode item", "kodeitem", "item code", "sku",
            "kelompok", "group", "category",
            "family", "famili", "familia",
            "kode material", "kodematerial", "material code", "kode_material",
            "kode motif", "kodemotif", "motif code", "pattern code",
            "nama motif", "namamotif", "motif name", "pattern name",
            "normal price", "normalprice", "harga normal", "price",
        ),
        required=("kode_item",),
        extra_columns=(("sp", "REAL"),),
    ),
    "opening_stock": ImportTarget(
        key="opening_stock",
        label="Opening Stock",
        table="stock",
        description="Opening stock per warehouse, one row per serial number.",
        fields=(
            ImportField("serial_number", "SN", _SN_ALIASES),
            ImportField("kode_item", "Kode Item", _KODE_ITEM_ALIASES),
            ImportField(
                "sc",
                "Serial Code",
                ("sc", "serial code", "serial_code", "kode serial", "series code"),
            ),
            ImportField("nama_barang", "Nama Barang", _NAMA_ITEM_ALIASES),
            ImportField("qty", "Qty", _QTY_ALIASES, kind=FIELD_KIND_QUANTITY, default=1),
        ),
        header_vocabulary=(
            "s/n", "serial number", "serial no", "no seri",
            "kode item", "kode barang", "item code", "sku",
            "serial code", "kode serial",
            "nama barang", "nama item", "item name",
            "qty", "quantity", "jumlah",
        ),
        required=("serial_number",),
        context_fields=("kode_gudang",),
    ),
    "transfer_items": ImportTarget(
        key="transfer_items",
        label="Transfer Order Items",
        table="to_itemlist",
        description="Items attached to an existing transfer order.",
        fields=(
            ImportField("sn", "SN", _SN_ALIASES),
            ImportField("kode_item", "Kode Item", _KODE_ITEM_ALIASES),
            ImportField("nama_item", "Nama Item", _NAMA_ITEM_ALIASES),
            ImportField("qty", "Qty", _QTY_ALIASES, kind=FIELD_KIND_QUANTITY, default=1),
        ),
        header_vocabulary=(
            "s/n", "serial number", "serial no",
            "kode item", "item code", "sku",
            "nama item", "item name", "nama barang",
            "qty", "quantity", "jumlah",
        ),
        required_any=("sn", "kode_item"),
        context_fields=("to_id",),
    ),
    "staff": ImportTarget(
        key="staff",
        label="Staff",
        table="staff",
        description="Staff master data keyed by NIK.",
        fields=(
            ImportField("nik", "NIK", ("nik", "employee id", "employee_id", "no induk", "nomor induk")),
            ImportField("email", "Email", ("email", "e-mail", "email address")),
            ImportField("nama_lengkap", "Nama Lengkap", ("nama_lengkap", "nama lengkap", "full name", "full_name", "nama")),
            ImportField("kota", "Kota", ("kota", "city")),
            ImportField("alamat", "Alamat", ("alamat", "address")),
            ImportField("no_hp", "No HP", ("no_hp", "no hp", "nomor hp", "phone", "mobile", "handphone")),
            ImportField("tempat_lahir", "Tempat Lahir", ("tempat_lahir", "tempat lahir", "place of birth", "birthplace")),
            ImportField("tanggal_lahir", "Tanggal Lahir", ("tanggal_lahir", "tanggal lahir", "date of birth", "birth date", "dob")),
            ImportField("tanggal_masuk", "Tanggal Masuk", ("tanggal_masuk", "tanggal masuk", "join date", "hire date", "start date")),
            ImportField("jabatan", "Jabatan", ("jabatan", "position", "job title", "title")),
        ),
        header_vocabulary=(
            "nik", "email", "nama lengkap", "full name", "kota", "city",
            "alamat", "address", "no hp", "phone", "tempat lahir",
            "tanggal lahir", "tanggal masuk", "jabatan", "position",
        ),
        required=("nik",),
    ),
}


def get_import_target(key: str) -> ImportTarget:
    cleaned = str(key or "").strip().lower().replace("-", "_")
    target = IMPORT_TARGETS.get(cleaned)
    if target is None:
        raise UnknownImportTargetError(
            f"Unknown import target '{key}'. Expected one of: {', '.join(sorted(IMPORT_TARGETS))}."
        )
    return target


def import_table_columns() -> dict[str, list[tuple[str, str]]]:
    return {target.table: target.column_types() for target in IMPORT_TARGETS.values()}


def import_target_options() -> list[dict[str, Any]]:
    return [
        {
            "key": target.key,
            "label": target.label,
            "description": target.description,
            "table": target.table,
            "fields": [{"key": item.key, "label": item.label, "kind": item.kind} for item in target.fields],
            "required": list(target.required),
            "required_any": list(target.required_any),
            "context_fields": list(target.context_fields),
        }
        for target in IMPORT_TARGETS.values()
    ]
