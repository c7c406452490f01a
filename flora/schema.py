SCHEMA_SQL = r"""
-- Categories (Cut flowers, Potted plants, Decor, Bouquets)
CREATE TABLE IF NOT EXISTS categories (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL UNIQUE COLLATE NOCASE,
  description TEXT
);

-- Products: raw stock items and produced bouquets (is_composite=1)
CREATE TABLE IF NOT EXISTS products (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  category_id INTEGER,
  vat_rate INTEGER NOT NULL DEFAULT 19,  -- percent, 7 or 19
  is_composite INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL,
  FOREIGN KEY (category_id) REFERENCES categories(id)
);

-- Materials (ribbon, wrapping, ...): bouquet ingredients only, never stocked
CREATE TABLE IF NOT EXISTS materials (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL UNIQUE COLLATE NOCASE,
  unit_price REAL NOT NULL DEFAULT 0,
  vat_rate INTEGER NOT NULL DEFAULT 19
);

-- Inventory: one row per stocked product
CREATE TABLE IF NOT EXISTS inventory (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  product_id INTEGER NOT NULL UNIQUE,
  quantity INTEGER NOT NULL DEFAULT 0 CHECK (quantity >= 0),
  unit_purchase_price REAL NOT NULL DEFAULT 0,  -- last known cost
  last_updated TEXT NOT NULL,
  FOREIGN KEY (product_id) REFERENCES products(id)
);

-- Bouquet templates
CREATE TABLE IF NOT EXISTS bouquet_templates (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL UNIQUE COLLATE NOCASE,
  description TEXT,
  base_price REAL NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS bouquet_template_items (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  template_id INTEGER NOT NULL,
  position INTEGER NOT NULL DEFAULT 0,
  product_id INTEGER,
  material_id INTEGER,
  quantity INTEGER NOT NULL CHECK (quantity >= 1),
  CHECK ((product_id IS NULL) <> (material_id IS NULL)),
  FOREIGN KEY (template_id) REFERENCES bouquet_templates(id) ON DELETE CASCADE,
  FOREIGN KEY (product_id) REFERENCES products(id),
  FOREIGN KEY (material_id) REFERENCES materials(id)
);

-- Transaction log (append-only; corrections are storno rows)
CREATE TABLE IF NOT EXISTS transactions (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  created_at TEXT NOT NULL,              -- ISO datetime (UTC)
  type TEXT NOT NULL,                    -- purchase / sale / sale_bouquet / usage / production /
                                         -- waste / personal / gift / discount / storno
  product_id INTEGER,
  quantity INTEGER NOT NULL,
  unit_price REAL NOT NULL,
  total_price REAL NOT NULL,
  vat_rate INTEGER NOT NULL DEFAULT 0,
  vat_amount REAL NOT NULL DEFAULT 0,
  note TEXT,
  payment_method TEXT,                   -- cash / card / invoice
  category TEXT,                         -- category captured at booking time
  stock_linked INTEGER NOT NULL DEFAULT 0,
  user_id TEXT,
  reverses_id INTEGER UNIQUE,            -- storno back-reference
  idempotency_key TEXT UNIQUE,
  FOREIGN KEY (product_id) REFERENCES products(id),
  FOREIGN KEY (reverses_id) REFERENCES transactions(id)
);

CREATE INDEX IF NOT EXISTS ix_transactions_created_at ON transactions(created_at);
CREATE INDEX IF NOT EXISTS ix_transactions_product ON transactions(product_id);

-- Append-only guard
CREATE TRIGGER IF NOT EXISTS trg_transactions_no_update
BEFORE UPDATE ON transactions
BEGIN
  SELECT RAISE(ABORT, 'transactions are append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_transactions_no_delete
BEFORE DELETE ON transactions
BEGIN
  SELECT RAISE(ABORT, 'transactions are append-only');
END;
"""
