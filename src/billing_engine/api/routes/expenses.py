"""Project expense endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Response, status

from billing_engine.api.dependencies import Expenses, FinanceReader, FinanceWriter
from billing_engine.api.schemas import (
    ErrorResponse,
    ExpenseCreate,
    ExpenseResponse,
    ExpenseUpdate,
)

router = APIRouter(prefix="/projects/{project_id}/expenses", tags=["expenses"])


@router.post(
    "",
    response_model=ExpenseResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def create_expense(
    actor: FinanceWriter,
    expenses: Expenses,
    payload: ExpenseCreate,
    project_id: Annotated[UUID, Path()],
) -> ExpenseResponse:
    expense = await expenses.create_expense(
        actor,
        project_id,
        amount=payload.amount,
        currency=payload.currency,
        category=payload.category,
        description=payload.description,
        receipt_url=payload.receipt_url,
        incurred_at=payload.incurred_at,
        billable=payload.billable,
    )
    return ExpenseResponse.model_validate(expense)


@router.get("", response_model=list[ExpenseResponse], responses={404: {"model": ErrorResponse}})
async def list_expenses(
    actor: FinanceReader,
    expenses: Expenses,
    project_id: Annotated[UUID, Path()],
) -> list[ExpenseResponse]:
    result = await expenses.list_expenses(actor, project_id)
    return [ExpenseResponse.model_validate(e) for e in result]


@router.patch(
    "/{expense_id}",
    response_model=ExpenseResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def update_expense(
    actor: FinanceWriter,
    expenses: Expenses,
    payload: ExpenseUpdate,
    project_id: Annotated[UUID, Path()],
    expense_id: Annotated[UUID, Path()],
) -> ExpenseResponse:
    expense = await expenses.update_expense(
        actor, project_id, expense_id, payload.model_dump(exclude_unset=True)
    )
    return ExpenseResponse.model_validate(expense)


@router.delete(
    "/{expense_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def delete_expense(
    actor: FinanceWriter,
    expenses: Expenses,
    project_id: Annotated[UUID, Path()],
    expense_id: Annotated[UUID, Path()],
) -> Response:
    await expenses.delete_expense(actor, project_id, expense_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
