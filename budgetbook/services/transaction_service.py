from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from budgetbook import models, schemas
from budgetbook.core.database import atomic
from budgetbook.core.logging import get_logger
from budgetbook.errors import ConsistencyError, ValidationFailed
from budgetbook.seed import get_transfer_category
from budgetbook.utils.money import money_sum, to_money, within_tolerance

from .balance_service import TransactionBalanceService, capture_effect
from .guards import OwnershipGuard


logger = get_logger(__name__)

# Fields a split part inherits from its parent and may not change on its own
_SPLIT_CHILD_LOCKED = ("amount", "type", "account_id", "transfer_account_id", "transaction_date", "is_pending")
_SPLIT_PARENT_LOCKED = ("amount", "type")
_PLAIN_FIELDS = ("description", "payee", "notes", "transaction_date", "is_pending", "reference_number", "tags")
_REQUIRED_FIELDS = (
    "account_id",
    "type",
    "amount",
    "category_id",
    "transfer_account_id",
    "transaction_date",
    "is_pending",
    "tags",
)


def _mirror_patch(patch: dict[str, Any]) -> dict[str, Any]:
    """Translate a patch written against the incoming side of a transfer."""
    mirrored = dict(patch)
    own = patch.get("account_id")
    other = patch.get("transfer_account_id")
    mirrored.pop("account_id", None)
    mirrored.pop("transfer_account_id", None)
    if own is not None:
        mirrored["transfer_account_id"] = own
    if other is not None:
        mirrored["account_id"] = other
    return mirrored


def check_category_type(category: models.Category, type_: models.TxnType) -> None:
    if category.type.value != models.TxnType(type_).value:
        raise ValidationFailed.single(
            "category_id",
            f"category type {category.type.value} does not match transaction type {models.TxnType(type_).value}",
        )
    if not category.is_active:
        raise ValidationFailed.single("category_id", f"category {category.id} is inactive")


class TransactionService:
    """Create, change and remove transactions together with their side effects.

    Every command runs as one atomic unit: the transaction rows, the account
    balances and the budget allocation totals either all change or none do.
    """

    def __init__(self, db: Session) -> None:
        self.db = db
        self.guard = OwnershipGuard(db)
        self.balances = TransactionBalanceService(db)

    # ---- Queries ---------------------------------------------------------
    def get(self, actor_id: int, txn_id: int) -> models.Transaction:
        return self.guard.transaction(actor_id, txn_id)

    def list_transactions(
        self,
        actor_id: int,
        *,
        account_id: Optional[int] = None,
        category_id: Optional[int] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        include_pending: bool = True,
    ) -> list[models.Transaction]:
        q = self.db.query(models.Transaction).filter(models.Transaction.user_id == actor_id)
        if account_id is not None:
            q = q.filter(models.Transaction.account_id == account_id)
        if category_id is not None:
            q = q.filter(models.Transaction.category_id == category_id)
        if start is not None:
            q = q.filter(models.Transaction.transaction_date >= start)
        if end is not None:
            q = q.filter(models.Transaction.transaction_date <= end)
        if not include_pending:
            q = q.filter(models.Transaction.is_pending.is_(False))
        return q.order_by(models.Transaction.transaction_date, models.Transaction.id).all()

    # ---- Commands --------------------------------------------------------
    def create(self, actor_id: int, payload: Any, *, today: Optional[date] = None) -> models.Transaction:
        """Record a transaction and apply its balance and budget effects.

        A transfer is stored as an outgoing row plus an incoming twin; the
        outgoing row is returned.
        """
        data = schemas.parse_input(schemas.TransactionCreate, payload)
        with atomic(self.db):
            account, category, transfer_account = self._resolve(
                actor_id,
                account_id=data.account_id,
                type_=data.type,
                category_id=data.category_id,
                transfer_account_id=data.transfer_account_id,
            )
            if data.recurring_transaction_id is not None:
                self.guard.recurring(actor_id, data.recurring_transaction_id)
            if data.bill_id is not None:
                self.guard.bill(actor_id, data.bill_id)

            txn = models.Transaction(
                user_id=actor_id,
                account_id=account.id,
                category_id=category.id,
                type=data.type,
                amount=to_money(data.amount),
                description=data.description,
                payee=data.payee,
                notes=data.notes,
                transaction_date=data.transaction_date or today or models.today_local(),
                is_pending=data.is_pending,
                reference_number=data.reference_number,
                recurring_transaction_id=data.recurring_transaction_id,
                bill_id=data.bill_id,
                tags=list(data.tags),
            )
            if transfer_account is not None:
                txn.transfer_account_id = transfer_account.id
                txn.transfer_direction = models.TransferDirection.OUT
            self.db.add(txn)
            self.db.flush()

            rows = [txn]
            if transfer_account is not None:
                rows.append(self._create_counterpart(txn))
            self.balances.apply_all(capture_effect(row) for row in rows)
        logger.info(
            "transaction_created",
            transaction_id=txn.id,
            user_id=actor_id,
            account_id=txn.account_id,
            type=txn.type.value,
            amount=str(txn.amount),
            pending=txn.is_pending,
        )
        return txn

    def update(
        self,
        actor_id: int,
        txn_id: int,
        changes: Any,
    ) -> models.Transaction:
        """Apply ``changes`` by reversing the old effect before applying the new one.

        Editing either side of a transfer updates both rows. The old effect is
        captured from the stored row before any field is touched, so changing
        account, type, amount and pending state at once cannot double count.
        """
        data = schemas.parse_input(schemas.TransactionUpdate, changes)
        patch = {
            key: value
            for key, value in data.model_dump(exclude_unset=True).items()
            if value is not None or key not in _REQUIRED_FIELDS
        }
        with atomic(self.db):
            txn = self.guard.transaction(actor_id, txn_id, lock=True)
            if not patch:
                return txn

            primary = txn
            if txn.type == models.TxnType.TRANSFER and txn.transfer_direction == models.TransferDirection.IN:
                if "type" in patch and patch["type"] != models.TxnType.TRANSFER:
                    raise ValidationFailed.single("type", "change the type on the outgoing side of the transfer")
                primary = self._counterpart(txn) or txn
                patch = _mirror_patch(patch)
            self._check_split_rules(primary, patch)

            new_type = patch.get("type", primary.type)
            type_changed = new_type != primary.type
            category_id: Optional[int] = patch.get("category_id", primary.category_id)
            if type_changed and "category_id" not in patch:
                # Leaving or entering a transfer: the old category no longer fits
                category_id = None
            transfer_account_id = patch.get("transfer_account_id", primary.transfer_account_id)
            if new_type != models.TxnType.TRANSFER:
                transfer_account_id = patch.get("transfer_account_id")

            account, category, transfer_account = self._resolve(
                actor_id,
                account_id=patch.get("account_id", primary.account_id),
                type_=new_type,
                category_id=category_id,
                transfer_account_id=transfer_account_id,
            )

            counterpart = self._counterpart(primary)
            old_effects = [capture_effect(row) for row in self._group(primary, counterpart)]
            self.balances.revert_all(old_effects)

            for key in _PLAIN_FIELDS:
                if key in patch:
                    setattr(primary, key, patch[key])
            if "amount" in patch:
                primary.amount = to_money(patch["amount"])
            primary.account_id = account.id
            primary.category_id = category.id
            primary.type = new_type

            if transfer_account is not None:
                primary.transfer_account_id = transfer_account.id
                primary.transfer_direction = models.TransferDirection.OUT
                self.db.flush()
                if counterpart is None:
                    counterpart = self._create_counterpart(primary)
                else:
                    self._sync_counterpart(primary, counterpart)
            else:
                primary.transfer_account_id = None
                primary.transfer_direction = None
                if counterpart is not None:
                    self._drop_counterpart(primary, counterpart)
                    counterpart = None

            for child in primary.children:
                child.account_id = primary.account_id
                child.transaction_date = primary.transaction_date
                child.is_pending = primary.is_pending
            self.db.flush()

            self.balances.apply_all(capture_effect(row) for row in self._group(primary, counterpart))
        logger.info(
            "transaction_updated",
            transaction_id=primary.id,
            user_id=actor_id,
            fields=sorted(patch),
            amount=str(primary.amount),
        )
        if txn is primary or txn is counterpart:
            return txn
        return primary

    def delete(self, actor_id: int, txn_id: int) -> None:
        """Reverse the effect of a transaction and remove it.

        Split parts go with their parent; a transfer takes its twin along.
        """
        with atomic(self.db):
            txn = self.guard.transaction(actor_id, txn_id, lock=True)
            if txn.is_split_child:
                raise ConsistencyError(
                    "a split part cannot be deleted on its own; unsplit or delete the parent transaction"
                )
            counterpart = self._counterpart(txn)
            self.balances.revert_all([capture_effect(row) for row in self._group(txn, counterpart)])
            if counterpart is not None:
                txn.transfer_transaction_id = None
                counterpart.transfer_transaction_id = None
                self.db.flush()
                self.db.delete(counterpart)
            self.db.delete(txn)
            self.db.flush()
        logger.info("transaction_deleted", transaction_id=txn_id, user_id=actor_id)

    def split_into_categories(self, actor_id: int, txn_id: int, parts: Iterable[Any]) -> models.Transaction:
        """Divide a transaction into per-category parts summing to its amount.

        The parent keeps the account balance effect; the parts take over the
        budget effect.
        """
        parsed = [schemas.parse_input(schemas.SplitPart, part) for part in parts]
        with atomic(self.db):
            txn = self.guard.transaction(actor_id, txn_id, lock=True)
            if txn.type == models.TxnType.TRANSFER:
                raise ValidationFailed.single("type", "transfers cannot be split")
            if txn.is_split_child:
                raise ValidationFailed.single("transaction_id", "a split part cannot be split again")
            if txn.is_split:
                raise ConsistencyError(f"transaction {txn.id} is already split")
            if len(parsed) < 2:
                raise ValidationFailed.single("parts", "at least two parts are required")
            total = money_sum(part.amount for part in parsed)
            if not within_tolerance(total, txn.amount):
                raise ValidationFailed.single(
                    "parts",
                    f"parts add up to {total} but the transaction amount is {to_money(txn.amount)}",
                )
            categories = [self.guard.category(actor_id, part.category_id) for part in parsed]
            for category in categories:
                check_category_type(category, txn.type)

            self.balances.revert(capture_effect(txn))
            for part, category in zip(parsed, categories):
                txn.children.append(
                    models.Transaction(
                        user_id=txn.user_id,
                        account_id=txn.account_id,
                        category_id=category.id,
                        type=txn.type,
                        amount=to_money(part.amount),
                        description=part.description or txn.description,
                        payee=txn.payee,
                        notes=part.notes,
                        transaction_date=txn.transaction_date,
                        is_pending=txn.is_pending,
                    )
                )
            txn.is_split = True
            self.db.flush()
            self.balances.apply_all(capture_effect(row) for row in self._group(txn, None))
        logger.info("transaction_split", transaction_id=txn.id, parts=len(parsed), total=str(total))
        return txn

    def unsplit(self, actor_id: int, txn_id: int) -> models.Transaction:
        with atomic(self.db):
            txn = self.guard.transaction(actor_id, txn_id, lock=True)
            if not txn.is_split:
                raise ConsistencyError(f"transaction {txn.id} is not split")
            self.balances.revert_all([capture_effect(row) for row in self._group(txn, None)])
            txn.children.clear()
            txn.is_split = False
            self.db.flush()
            self.balances.apply(capture_effect(txn))
        logger.info("transaction_unsplit", transaction_id=txn.id)
        return txn

    def create_transfer(
        self,
        actor_id: int,
        from_account_id: int,
        to_account_id: int,
        amount: Decimal | int | str,
        description: Optional[str] = None,
        transaction_date: Optional[date] = None,
        *,
        is_pending: bool = False,
        category_id: Optional[int] = None,
        today: Optional[date] = None,
    ) -> models.Transaction:
        return self.create(
            actor_id,
            {
                "account_id": from_account_id,
                "transfer_account_id": to_account_id,
                "type": models.TxnType.TRANSFER,
                "amount": amount,
                "description": description,
                "transaction_date": transaction_date,
                "is_pending": is_pending,
                "category_id": category_id,
            },
            today=today,
        )

    def mark_cleared(self, actor_id: int, txn_id: int) -> models.Transaction:
        return self.update(actor_id, txn_id, {"is_pending": False})

    def add_tags(self, actor_id: int, txn_id: int, tags: list[str]) -> models.Transaction:
        """Add tags not already on the transaction; both legs of a transfer carry them."""
        data = schemas.parse_input(schemas.TransactionTags, {"tags": tags})
        with atomic(self.db):
            txn = self.guard.transaction(actor_id, txn_id, lock=True)
            self._retag(txn, schemas.clean_tags([*txn.tags, *data.tags]))
        logger.info("transaction_tagged", transaction_id=txn.id, user_id=actor_id, tags=list(txn.tags))
        return txn

    def remove_tags(self, actor_id: int, txn_id: int, tags: list[str]) -> models.Transaction:
        data = schemas.parse_input(schemas.TransactionTags, {"tags": tags})
        with atomic(self.db):
            txn = self.guard.transaction(actor_id, txn_id, lock=True)
            self._retag(txn, [tag for tag in txn.tags if tag not in data.tags])
        logger.info("transaction_untagged", transaction_id=txn.id, user_id=actor_id, tags=list(txn.tags))
        return txn

    def duplicate(
        self,
        actor_id: int,
        txn_id: int,
        *,
        transaction_date: Optional[date] = None,
        today: Optional[date] = None,
    ) -> models.Transaction:
        source = self.guard.transaction(actor_id, txn_id)
        if source.transfer_direction == models.TransferDirection.IN:
            source = self._counterpart(source) or source
        payload = {
            "account_id": source.account_id,
            "type": source.type,
            "amount": source.amount,
            "category_id": source.category_id,
            "transfer_account_id": source.transfer_account_id,
            "transaction_date": transaction_date or today or models.today_local(),
            "description": source.description,
            "payee": source.payee,
            "notes": source.notes,
            "tags": list(source.tags),
        }
        return self.create(actor_id, payload, today=today)

    # ---- Helpers ---------------------------------------------------------
    def _resolve(
        self,
        actor_id: int,
        *,
        account_id: int,
        type_: models.TxnType,
        category_id: Optional[int],
        transfer_account_id: Optional[int],
    ) -> tuple[models.Account, models.Category, models.Account | None]:
        """Check ownership and type consistency of everything a row points at."""
        account = self.guard.account(actor_id, account_id, lock=True)
        transfer_account = None
        if type_ == models.TxnType.TRANSFER:
            if transfer_account_id is None:
                raise ValidationFailed.single("transfer_account_id", "required for transfers")
            if transfer_account_id == account_id:
                raise ValidationFailed.single("transfer_account_id", "cannot transfer to the same account")
            transfer_account = self.guard.account(
                actor_id, transfer_account_id, lock=True, field="transfer_account_id"
            )
        elif transfer_account_id is not None:
            raise ValidationFailed.single("transfer_account_id", "only allowed for transfers")

        if category_id is None:
            if type_ != models.TxnType.TRANSFER:
                raise ValidationFailed.single("category_id", "a category is required")
            category = get_transfer_category(self.db)
        else:
            category = self.guard.category(actor_id, category_id)
        check_category_type(category, type_)
        return account, category, transfer_account

    @staticmethod
    def _check_split_rules(txn: models.Transaction, patch: dict[str, Any]) -> None:
        def changed(field: str) -> bool:
            if field not in patch:
                return False
            if field == "amount":
                return to_money(patch[field]) != to_money(txn.amount)
            return patch[field] != getattr(txn, field)

        if txn.is_split_child:
            locked = [f for f in _SPLIT_CHILD_LOCKED if changed(f)]
            if locked:
                raise ValidationFailed({f: "edit the parent of a split transaction instead" for f in locked})
        if txn.is_split:
            locked = [f for f in _SPLIT_PARENT_LOCKED if changed(f)]
            if locked:
                raise ValidationFailed({f: "unsplit the transaction before changing it" for f in locked})

    def _counterpart(self, txn: models.Transaction) -> models.Transaction | None:
        if txn.transfer_transaction_id is None:
            return None
        return (
            self.db.query(models.Transaction)
            .filter(models.Transaction.id == txn.transfer_transaction_id)
            .with_for_update()
            .first()
        )

    @staticmethod
    def _group(txn: models.Transaction, counterpart: models.Transaction | None) -> list[models.Transaction]:
        rows = [txn]
        if counterpart is not None:
            rows.append(counterpart)
        rows.extend(txn.children)
        return rows

    def _create_counterpart(self, out_row: models.Transaction) -> models.Transaction:
        twin = models.Transaction(
            user_id=out_row.user_id,
            account_id=out_row.transfer_account_id,
            transfer_account_id=out_row.account_id,
            transfer_direction=models.TransferDirection.IN,
            transfer_transaction_id=out_row.id,
            type=models.TxnType.TRANSFER,
            category_id=out_row.category_id,
            amount=out_row.amount,
            description=out_row.description,
            payee=out_row.payee,
            notes=out_row.notes,
            transaction_date=out_row.transaction_date,
            is_pending=out_row.is_pending,
            reference_number=out_row.reference_number,
            recurring_transaction_id=out_row.recurring_transaction_id,
            tags=list(out_row.tags),
        )
        self.db.add(twin)
        self.db.flush()
        out_row.transfer_transaction_id = twin.id
        self.db.flush()
        return twin

    @staticmethod
    def _sync_counterpart(out_row: models.Transaction, twin: models.Transaction) -> None:
        twin.account_id = out_row.transfer_account_id
        twin.transfer_account_id = out_row.account_id
        twin.transfer_direction = models.TransferDirection.IN
        twin.category_id = out_row.category_id
        twin.amount = out_row.amount
        twin.transaction_date = out_row.transaction_date
        twin.is_pending = out_row.is_pending
        twin.description = out_row.description
        twin.payee = out_row.payee
        twin.notes = out_row.notes
        twin.reference_number = out_row.reference_number
        twin.tags = list(out_row.tags)

    def _retag(self, txn: models.Transaction, tags: list[str]) -> None:
        txn.tags = tags
        counterpart = self._counterpart(txn)
        if counterpart is not None:
            counterpart.tags = list(tags)
        self.db.flush()

    def _drop_counterpart(self, out_row: models.Transaction, twin: models.Transaction) -> None:
        out_row.transfer_transaction_id = None
        twin.transfer_transaction_id = None
        self.db.flush()
        self.db.delete(twin)
